"""
证书签发记录的数据模型定义。
"""

from pydantic import BaseModel, ConfigDict, Field


class CertRecord(BaseModel):
    """
    一次成功签发的记录，写入后不再修改。
    序列化为 {"PubKey": ..., "Token": ..., "IPAddr": ...}。
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    pub_key: str = Field(alias="PubKey")
    token: str = Field(alias="Token")
    ip_addr: str = Field(alias="IPAddr")
