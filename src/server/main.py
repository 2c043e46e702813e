"""
FastAPI 应用入口点。
"""

from __future__ import annotations

import ipaddress
from contextlib import asynccontextmanager
from typing import Callable, Optional

import jwt
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from src.server.auth.jwks import discover_jwks_url, fetch_jwks
from src.server.auth.verifier import TokenVerifier
from src.server.ca.router import router as ca_router
from src.server.ca.services import IssuanceOrchestrator
from src.server.ca.signer import NebulaCertSigner, Signer
from src.server.config import Config, config
from src.server.storage.allocator import AddressAllocator
from src.server.storage.ledger import RecordLedger
from src.server.storage.store import DurableStore


def _resolve_jwks_url(settings: Config) -> str:
    """优先使用显式配置的 jwks_url，否则通过发现文档获取。"""
    if settings.jwks_url:
        return settings.jwks_url
    if not settings.discovery_url:
        raise RuntimeError("jwks_url 与 discovery_url 均未配置")
    jwks_url = discover_jwks_url(settings.discovery_url, timeout=settings.jwks_timeout_s)
    logger.info(f"通过发现文档获取到 jwks_uri: {jwks_url}")
    return jwks_url


def _default_signer(settings: Config) -> NebulaCertSigner:
    return NebulaCertSigner(
        binary=settings.nebula_cert_bin,
        ca_cert_file=settings.ca_cert_file,
        ca_key_file=settings.ca_key_file,
        prefix_length=ipaddress.IPv4Network(settings.ip_network, strict=False).prefixlen,
        groups=settings.cert_groups,
        duration=settings.cert_duration,
        timeout=settings.signer_timeout_s,
    )


def create_app(
    settings: Optional[Config] = None,
    signer: Optional[Signer] = None,
    key_set_loader: Optional[Callable[[], jwt.PyJWKSet]] = None,
) -> FastAPI:
    """
    构建应用。存储在 lifespan 中打开并在关闭时释放，各组件显式持有同一个存储实例。
    :param settings: 配置，默认使用全局 config。
    :param signer: 签名器，默认使用 nebula-cert。
    :param key_set_loader: JWKS 加载函数，默认每次请求实时获取。
    """
    settings = settings or config

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store = DurableStore(settings.db_path)
        try:
            loader = key_set_loader
            if loader is None:
                jwks_url = _resolve_jwks_url(settings)

                def loader() -> jwt.PyJWKSet:
                    return fetch_jwks(jwks_url, timeout=settings.jwks_timeout_s)

            ledger = RecordLedger(store)
            orchestrator = IssuanceOrchestrator(
                verifier=TokenVerifier(
                    client_id=settings.client_id,
                    issuer=settings.issuer,
                    leeway=settings.token_leeway_s,
                ),
                key_set_loader=loader,
                allocator=AddressAllocator(store, settings.default_ip_address, settings.ip_network),
                signer=signer or _default_signer(settings),
                ledger=ledger,
                signer_timeout=settings.signer_timeout_s,
            )
            app.state.settings = settings
            app.state.store = store
            app.state.orchestrator = orchestrator

            record_count = ledger.count()
            logger.info(f"证书签发服务已启动，账本中已有 {record_count} 条记录")
            yield

            logger.info("应用关闭，等待进行中的签发完成...")
            if not orchestrator.wait_idle(timeout=settings.shutdown_grace_s):
                logger.warning(f"仍有 {orchestrator.in_flight} 个签发未完成，强制关闭存储")
            orchestrator.shutdown()
        finally:
            store.close()

    app = FastAPI(title="Nebula OIDC Certificate Authority", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(ca_router)
    return app


app = create_app()

logger.info(f"config: {config.model_dump_json(indent=4)}")
