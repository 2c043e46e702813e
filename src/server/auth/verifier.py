"""
ID Token 校验逻辑。

校验顺序固定，不可调换：
1. 解析令牌结构与头部；
2. 按头部 kid 在 JWKS 中选择公钥并验证签名；
3. 验证 exp / iat / iss 等声明；
4. 验证 aud 包含本服务的 client id；
5. 构造 Identity。
签名通过之前不读取任何声明的值。
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Dict, List

import jwt
from loguru import logger

from ..errors import (
    AudienceMismatchError,
    ClaimsInvalidError,
    MalformedTokenError,
    SignatureError,
)
from .schemas import Identity


class TokenVerifier:
    """
    持有期望的 audience / issuer 等校验参数，对每个请求的令牌做完整校验。
    :param client_id: 期望出现在 aud 中的 client id。
    :param issuer: 若配置则 iss 必须与之相等。
    :param leeway: 时钟偏差容忍（秒），用于 exp 与 iat。
    :param identity_claim: 作为身份的自定义声明名，默认 email。
    """

    def __init__(
        self,
        client_id: str,
        issuer: str | None = None,
        leeway: int = 0,
        identity_claim: str = "email",
    ) -> None:
        self.client_id = client_id
        self.issuer = issuer
        self.leeway = leeway
        self.identity_claim = identity_claim

    def verify(self, token: str, key_set: jwt.PyJWKSet) -> Identity:
        """
        校验令牌并返回身份。
        :raises MalformedTokenError / SignatureError / ClaimsInvalidError / AudienceMismatchError
        """
        header = self._parse_header(token)
        signing_key = self._select_key(header, key_set)
        claims = self._decode_verified(token, signing_key)
        self._check_issued_at(claims)
        audience = self._check_audience(claims)
        return self._build_identity(claims, audience)

    def _parse_header(self, token: str) -> Dict[str, Any]:
        if not isinstance(token, str) or token.count(".") != 2:
            raise MalformedTokenError("令牌不是 JWS 紧凑格式")
        try:
            return jwt.get_unverified_header(token)
        except jwt.InvalidTokenError as e:
            raise MalformedTokenError(f"无法解析令牌头部: {e}") from e

    def _select_key(self, header: Dict[str, Any], key_set: jwt.PyJWKSet) -> jwt.PyJWK:
        kid = header.get("kid")
        if not kid:
            raise SignatureError("令牌头部缺少 kid")
        try:
            return key_set[kid]
        except KeyError as e:
            raise SignatureError(f"JWKS 中没有 kid={kid} 的公钥") from e

    def _decode_verified(self, token: str, signing_key: jwt.PyJWK) -> Dict[str, Any]:
        """验证签名后再验证时间与签发者声明；aud 单独处理。"""
        try:
            return jwt.decode(
                token,
                signing_key.key,
                algorithms=[signing_key.algorithm_name],
                issuer=self.issuer,
                leeway=self.leeway,
                options={
                    "require": ["exp", "iat"],
                    "verify_aud": False,
                },
            )
        except (jwt.InvalidSignatureError, jwt.InvalidAlgorithmError) as e:
            raise SignatureError(f"签名验证失败: {e}") from e
        except jwt.DecodeError as e:
            # 签名已通过，exp 类型错误也以 DecodeError 形式抛出
            if "(exp)" in str(e):
                raise ClaimsInvalidError("exp", f"exp 不合法: {e}") from e
            raise MalformedTokenError(f"令牌内容无法解码: {e}") from e
        except jwt.ExpiredSignatureError as e:
            raise ClaimsInvalidError("exp", "令牌已过期") from e
        except jwt.ImmatureSignatureError as e:
            claim = "iat" if "iat" in str(e) else "nbf"
            raise ClaimsInvalidError(claim, f"令牌尚未生效 ({claim})") from e
        except jwt.InvalidIssuedAtError as e:
            raise ClaimsInvalidError("iat", f"iat 不合法: {e}") from e
        except jwt.InvalidIssuerError as e:
            raise ClaimsInvalidError("iss", "签发者不匹配") from e
        except jwt.MissingRequiredClaimError as e:
            raise ClaimsInvalidError(e.claim, f"缺少必需声明: {e.claim}") from e
        except jwt.InvalidTokenError as e:
            raise ClaimsInvalidError("token", f"声明校验失败: {e}") from e

    def _check_issued_at(self, claims: Dict[str, Any]) -> None:
        # 不同 PyJWT 版本对未来 iat 的处理不一致，这里显式检查
        try:
            iat = float(claims["iat"])
        except (TypeError, ValueError) as e:
            raise ClaimsInvalidError("iat", "iat 必须是数字") from e
        if iat > time.time() + self.leeway:
            raise ClaimsInvalidError("iat", "令牌签发时间在未来 (iat)")

    def _check_audience(self, claims: Dict[str, Any]) -> List[str]:
        aud = claims.get("aud")
        if aud is None:
            raise AudienceMismatchError("令牌缺少 aud")
        if isinstance(aud, str):
            audience = [aud]
        elif isinstance(aud, list) and all(isinstance(a, str) for a in aud):
            audience = list(aud)
        else:
            raise ClaimsInvalidError("aud", "aud 必须是字符串或字符串数组")

        if self.client_id not in audience:
            raise AudienceMismatchError(f"aud 不包含 client id: {audience}")
        return audience

    def _build_identity(self, claims: Dict[str, Any], audience: List[str]) -> Identity:
        value = claims.get(self.identity_claim)
        if not isinstance(value, str) or not value:
            raise ClaimsInvalidError(self.identity_claim, f"缺少身份声明: {self.identity_claim}")

        identity = Identity(
            email=value,
            subject=_str_or_none(claims.get("sub")),
            issuer=_str_or_none(claims.get("iss")),
            audience=audience,
            expires_at=_to_datetime(claims, "exp"),
            issued_at=_to_datetime(claims, "iat"),
        )
        logger.info(f"ID Token 校验通过: {identity.email}")
        return identity


def _str_or_none(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _to_datetime(claims: Dict[str, Any], claim: str) -> datetime:
    # 签名合法的令牌也可能携带超出 datetime 范围的时间戳
    try:
        return datetime.fromtimestamp(int(claims[claim]), tz=timezone.utc)
    except (OverflowError, ValueError, OSError) as e:
        raise ClaimsInvalidError(claim, f"{claim} 超出可表示的时间范围") from e
