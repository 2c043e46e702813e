"""
令牌校验结果的数据模型定义。
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class Identity(BaseModel):
    """
    通过校验的令牌所代表的身份，只在校验器边界构造。
    """
    model_config = ConfigDict(frozen=True)

    email: str
    subject: Optional[str] = None
    issuer: Optional[str] = None
    audience: List[str] = []
    expires_at: datetime
    issued_at: datetime
