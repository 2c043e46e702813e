"""
证书签发服务的数据模型定义。
"""

from enum import Enum
from typing import Any, List

from pydantic import BaseModel, ConfigDict, Field, model_validator


class IssueCertRequest(BaseModel):
    """
    客户端请求签发证书时的数据模型。
    字段名沿用 nebula 客户端的 Token / PubKey，也接受小写形式。
    """
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    token: str = Field(alias="Token", min_length=1)
    pub_key: str = Field(alias="PubKey", min_length=1)

    @model_validator(mode="before")
    @classmethod
    def match_field_names(cls, data: Any) -> Any:
        """字段名大小写不敏感：token / TOKEN / pubkey / pubKey 均可。"""
        if not isinstance(data, dict):
            return data
        aliases = {"token": "Token", "pubkey": "PubKey"}
        return {aliases.get(str(k).lower(), k): v for k, v in data.items()}


class CertificateResponse(BaseModel):
    """
    服务端返回签发证书的数据模型。
    """
    record_id: str
    certificate: str   # PEM 格式的 nebula 证书
    ip_address: str
    name: str


class NebulaConfigurationResponse(BaseModel):
    """
    /.well-known/nebula-configuration 返回的公开认证配置。
    """
    model_config = ConfigDict(populate_by_name=True)

    discovery_url: str = Field(alias="DiscoveryURL")
    client_id: str = Field(alias="ClientID")
    redirect_uri: str = Field(alias="RedirectURI")
    ca_url: str = Field(alias="CAURL")


class IssuanceState(str, Enum):
    RECEIVED = "received"
    TOKEN_VERIFIED = "token_verified"
    ADDRESS_ALLOCATED = "address_allocated"
    SIGNED = "signed"
    RECORDED = "recorded"
    COMPLETE = "complete"
    FAILED = "failed"


class FailureReason(str, Enum):
    AUTH = "auth"
    ALLOCATION = "allocation"
    SIGNING = "signing"
    PERSISTENCE = "persistence"


class IssuanceResult(BaseModel):
    """
    一次成功签发的结果，history 记录经过的状态。
    """
    record_id: str
    certificate: str
    ip_address: str
    email: str
    history: List[IssuanceState]

    def to_response(self) -> CertificateResponse:
        return CertificateResponse(
            record_id=self.record_id,
            certificate=self.certificate,
            ip_address=self.ip_address,
            name=self.email,
        )
