"""
JWKS 获取模块。

公开接口：
    - fetch_jwks(url, timeout, client=None) -> PyJWKSet
      单次同步 GET 获取身份提供方公布的签名公钥集合，不做重试、不做缓存。

    - discover_jwks_url(discovery_url, timeout, client=None) -> str
      读取 OpenID 发现文档，返回其中的 jwks_uri。

两者共享同一套错误：TransportError / StatusError / DecodeError。
"""

from __future__ import annotations

from typing import Any

import httpx
import jwt
from loguru import logger

from ..errors import DecodeError, StatusError, TransportError

_WELL_KNOWN_SUFFIX = "/.well-known/openid-configuration"


def _get_json(url: str, timeout: float, client: httpx.Client | None) -> Any:
    """GET 一个 JSON 文档；只接受 200。"""
    try:
        if client is not None:
            resp = client.get(url, timeout=timeout)
        else:
            resp = httpx.get(url, timeout=timeout)
    except httpx.HTTPError as e:
        logger.warning(f"请求 {url} 失败: {e}")
        raise TransportError(f"无法获取 {url}: {e}") from e

    if resp.status_code != 200:
        logger.warning(f"请求 {url} 返回状态码 {resp.status_code}")
        raise StatusError(resp.status_code, url)

    try:
        return resp.json()
    except ValueError as e:
        raise DecodeError(f"响应体不是合法 JSON: {url}") from e


def fetch_jwks(url: str, timeout: float = 10.0, client: httpx.Client | None = None) -> jwt.PyJWKSet:
    """
    获取并解析 JWKS。
    :param url: JWKS 地址。
    :param timeout: 请求超时（秒）。
    :param client: 可选的 httpx.Client，便于测试注入。
    :return: PyJWKSet，按文档顺序保存各个公钥。
    :raises TransportError / StatusError / DecodeError
    """
    data = _get_json(url, timeout, client)
    if not isinstance(data, dict) or not isinstance(data.get("keys"), list):
        raise DecodeError("JWKS 文档缺少 keys 数组")

    try:
        key_set = jwt.PyJWKSet.from_dict(data)
    except (jwt.PyJWTError, TypeError, ValueError) as e:
        raise DecodeError(f"无法解析 JWKS: {e}") from e

    logger.debug(f"已获取 JWKS: {url}，共 {len(key_set.keys)} 个可用公钥")
    return key_set


def discover_jwks_url(discovery_url: str, timeout: float = 10.0, client: httpx.Client | None = None) -> str:
    """从 OpenID 发现文档中读取 jwks_uri。discovery_url 可以是 issuer 根地址。"""
    url = discovery_url.rstrip("/")
    if not url.endswith(_WELL_KNOWN_SUFFIX):
        url = url + _WELL_KNOWN_SUFFIX

    data = _get_json(url, timeout, client)
    jwks_uri = data.get("jwks_uri") if isinstance(data, dict) else None
    if not isinstance(jwks_uri, str) or not jwks_uri:
        raise DecodeError(f"发现文档中没有 jwks_uri: {url}")
    return jwks_uri
