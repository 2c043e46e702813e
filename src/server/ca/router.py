"""
证书签发服务的 FastAPI 路由定义。
"""

import json

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import PlainTextResponse
from loguru import logger
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from ..errors import AudienceMismatchError, TokenError
from .schemas import CertificateResponse, FailureReason, IssueCertRequest, NebulaConfigurationResponse
from .services import IssuanceFailed, IssuanceOrchestrator

router = APIRouter(tags=["Certificate Authority"])

_UNAUTHORIZED = "Unauthorized"
_INTERNAL_ERROR = "Internal Server Error"


def get_orchestrator(request: Request) -> IssuanceOrchestrator:
    return request.app.state.orchestrator


@router.get("/welcome", response_class=PlainTextResponse)
async def welcome(request: Request) -> str:
    """
    存活检查。
    """
    return f"Hello, you've requested: {request.url.path}\n"


@router.get("/.well-known/nebula-configuration", response_model=NebulaConfigurationResponse, response_model_by_alias=True)
async def nebula_configuration(request: Request) -> NebulaConfigurationResponse:
    """
    返回客户端登录所需的公开认证配置。
    """
    return NebulaConfigurationResponse(**request.app.state.settings.public_auth_config())


@router.get("/issuecert", response_class=PlainTextResponse)
async def issue_certificate_get() -> str:
    return "nothing to see here"


async def _read_issue_request(request: Request) -> IssueCertRequest:
    """校验请求的 Content-Type 与体积上限，再解析为 IssueCertRequest。"""
    content_type = request.headers.get("content-type")
    if content_type is not None:
        media_type = content_type.split(";", 1)[0].strip().lower()
        if media_type != "application/json":
            raise HTTPException(
                status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
                detail="Content-Type header is not application/json",
            )

    max_bytes = request.app.state.settings.max_body_bytes
    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > max_bytes:
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail="Request body must not be larger than 1MB",
            )

    if not body.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Request body must not be empty")

    try:
        data = json.loads(body)
    except json.JSONDecodeError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Request body contains badly-formed JSON (at position {e.pos})",
        )
    except UnicodeDecodeError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Request body contains badly-formed JSON")

    if not isinstance(data, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Request body must be a JSON object")

    try:
        return IssueCertRequest.model_validate(data)
    except ValidationError as e:
        err = e.errors()[0]
        field = ".".join(str(loc) for loc in err.get("loc", ())) or "body"
        if err.get("type") == "extra_forbidden":
            detail = f"Request body contains unknown field \"{field}\""
        else:
            detail = f"Request body contains an invalid value for the \"{field}\" field"
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


@router.post("/issuecert", response_model=CertificateResponse)
async def issue_certificate(request: Request) -> CertificateResponse:
    """
    使用 ID Token 申请签发 nebula 证书。
    认证失败只返回通用的 Unauthorized，具体原因只写入服务端日志。
    """
    req = await _read_issue_request(request)
    orchestrator = get_orchestrator(request)

    try:
        result = await run_in_threadpool(orchestrator.issue, req)
    except IssuanceFailed as e:
        # JWKS 获取失败同属 AUTH 阶段，但不是调用方的问题，按内部错误处理
        if e.reason is FailureReason.AUTH and isinstance(e.cause, AudienceMismatchError):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=_UNAUTHORIZED)
        if e.reason is FailureReason.AUTH and isinstance(e.cause, TokenError):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=_UNAUTHORIZED)
        logger.error(f"签发内部错误: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=_INTERNAL_ERROR)

    return result.to_response()
