"""
证书签发网关的异常体系。
按子系统分组：密钥集获取、令牌校验、地址分配、持久化、外部签名。
路由层只依赖这些分组来决定 HTTP 状态码。
"""

from __future__ import annotations


class GatekeeperError(Exception):
    """所有业务异常的基类。"""


# --- 密钥集获取 -------------------------------------------------------------


class KeySetError(GatekeeperError):
    """获取或解析 JWKS 失败。"""


class TransportError(KeySetError):
    """请求无法发出或超时。"""


class StatusError(KeySetError):
    """响应状态码不是 200。"""

    def __init__(self, status_code: int, url: str = "") -> None:
        super().__init__(f"JWKS 请求返回非 200 状态码: {status_code} ({url})")
        self.status_code = status_code
        self.url = url


class DecodeError(KeySetError):
    """响应体不是合法的 JWKS 文档。"""


# --- 令牌校验 ---------------------------------------------------------------


class TokenError(GatekeeperError):
    """令牌校验失败（对外统一表现为 unauthorized）。"""


class MalformedTokenError(TokenError):
    """无法识别的签名令牌格式。"""


class SignatureError(TokenError):
    """签名不匹配、kid 未知或算法不被允许。"""


class ClaimsInvalidError(TokenError):
    """标准或自定义声明不合法。"""

    def __init__(self, claim: str, message: str = "") -> None:
        super().__init__(message or f"声明校验失败: {claim}")
        self.claim = claim


class AudienceMismatchError(TokenError):
    """aud 中不包含期望的 client id，说明令牌发给了别的应用。"""


# --- 地址分配 ---------------------------------------------------------------


class AllocationError(GatekeeperError):
    """地址分配失败。"""


class ParseError(AllocationError):
    """游标不是四段 0-255 的点分十进制地址。"""


class AddressSpaceExhaustedError(AllocationError):
    """地址空间耗尽，分配器停止工作。"""


# --- 持久化 -----------------------------------------------------------------


class PersistenceError(GatekeeperError):
    """存储层错误。"""


class EncodeError(PersistenceError):
    """记录无法序列化。"""


class StoreError(PersistenceError):
    """底层事务失败或存储已关闭。"""


class NotFoundError(PersistenceError):
    """记录不存在。"""


# --- 外部签名 ---------------------------------------------------------------


class SigningError(GatekeeperError):
    """外部签名工具失败或超时。"""
