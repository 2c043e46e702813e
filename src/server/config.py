"""
配置加载模块：支持 .env、环境变量、工作目录 config.json（或 CONFIG_FILE 指定）多来源合并。
公开接口：
- Config: 读取配置的设置类
- config: Config 的单例实例
- Config.public_auth_config: 对外公开的认证配置（/.well-known/nebula-configuration）
内部方法：
- Config.settings_customise_sources: 自定义配置来源顺序
- Config.parse_groups: 将字符串/JSON 解析为 List[str]
- Config.check_ip_network: 校验并规范化 ip_network
"""

from __future__ import annotations

import ipaddress
import json
import os
import re
from pathlib import Path
from typing import Annotated, Any, Dict, List, Optional, Tuple

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict, PydanticBaseSettingsSource


class Config(BaseSettings):
    # 身份提供方（OIDC）
    discovery_url: str = ""
    client_id: str = ""
    redirect_uri: str = ""
    ca_url: str = ""
    jwks_url: str = ""
    issuer: Optional[str] = None
    jwks_timeout_s: float = 10.0
    token_leeway_s: int = Field(default=30, ge=0, le=60)

    # nebula-cert 签名
    nebula_cert_bin: str = "nebula-cert"
    ca_cert_file: str = "ca.crt"
    ca_key_file: str = "ca.key"
    # NoDecode：交给 parse_groups 处理，不先做 JSON 解码
    cert_groups: Annotated[List[str], NoDecode] = []
    cert_duration: str = ""
    signer_timeout_s: float = 30.0

    # 存储与地址分配
    db_path: str = "data/gatekeeper.db"
    default_ip_address: str = "10.0.0.1"
    ip_network: str = "10.0.0.0/8"

    # HTTP 服务
    host: str = "127.0.0.1"
    port: int = 8000
    max_body_bytes: int = 1048576
    shutdown_grace_s: float = 30.0
    log_level: str = "INFO"

    # pydantic v2 风格配置（等价于旧版的 class Config）
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("cert_groups", mode="before")
    @classmethod
    def parse_groups(cls, value: Any) -> List[str]:
        """支持从环境变量以 JSON 或分隔符（逗号/分号/空白）解析 cert_groups。"""
        if value is None or value == "":
            return []
        if isinstance(value, list):
            return [str(v) for v in value]
        if isinstance(value, str):
            text = value.strip()
            # 优先尝试 JSON
            try:
                loaded = json.loads(text)
                if isinstance(loaded, list):
                    return [str(v) for v in loaded]
            except ValueError:
                pass
            # 回退为分隔符拆分（, ; 空白）
            return [p for p in re.split(r"[\s,;]+", text) if p]
        return value

    @field_validator("ip_network")
    @classmethod
    def check_ip_network(cls, value: str) -> str:
        """ip_network 必填，证书前缀长度与地址范围都取自它。"""
        try:
            return str(ipaddress.IPv4Network(value.strip(), strict=False))
        except ValueError as e:
            raise ValueError(f"ip_network 不是合法的 IPv4 网段: {value!r}") from e

    @field_validator("issuer", mode="before")
    @classmethod
    def empty_issuer_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    def public_auth_config(self) -> Dict[str, str]:
        """客户端需要的认证配置，字段名与 nebula 客户端约定一致。"""
        return {
            "DiscoveryURL": self.discovery_url,
            "ClientID": self.client_id,
            "RedirectURI": self.redirect_uri,
            "CAURL": self.ca_url,
        }

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        """自定义配置来源顺序：入参 > 环境变量 > .env > config.json > secrets。"""

        class JsonFileSettingsSource(PydanticBaseSettingsSource):
            """从工作目录的 config.json（或 CONFIG_FILE 指定路径）加载配置的自定义 Source。"""

            def __init__(self, settings_cls):
                super().__init__(settings_cls)
                self._data: Dict[str, Any] | None = None

            def _load(self) -> None:
                if self._data is not None:
                    return
                cfg_path = os.environ.get("CONFIG_FILE")
                path = Path(cfg_path) if cfg_path else Path.cwd() / "config.json"
                if not path.exists():
                    self._data = {}
                    return
                try:
                    with path.open("r", encoding="utf-8") as f:
                        data = json.load(f)
                    self._data = data if isinstance(data, dict) else {}
                except (OSError, ValueError):
                    self._data = {}

            def __call__(self) -> Dict[str, Any]:
                self._load()
                return dict(self._data or {})

            def get_field_value(self, field, field_name):  # type: ignore[override]
                """为满足抽象基类要求，按键名/别名返回字段值。"""
                self._load()
                data = self._data or {}
                key_alias = getattr(field, "alias", None) or field_name
                if key_alias in data:
                    return data[key_alias], key_alias, True
                if field_name in data:
                    return data[field_name], field_name, True
                return None, field_name, False

        return (
            init_settings,
            env_settings,
            dotenv_settings,
            JsonFileSettingsSource(settings_cls),
            file_secret_settings,
        )


config = Config()
