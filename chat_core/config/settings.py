"""配置管理模块。

支持从初始化参数、环境变量、.env 以及 config.yaml 加载配置，
并把 Provider 相关字段解析为 {name -> ProviderConnection} 映射供 Registry 使用。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from chat_core.providers.registry import (
    GLM_DEFAULTS,
    KIMI_DEFAULTS,
    OLLAMA_DEFAULTS,
    OPENAI_DEFAULTS,
    ProviderConnection,
)


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("CHAT_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class Settings(BaseSettings):
    """运行配置。"""

    # ---- 本地推理服务（Ollama）----
    ollama_enabled: bool = Field(default=True, description="是否注册本地 Ollama")
    ollama_base_url: str = Field(default=OLLAMA_DEFAULTS.base_url, description="Ollama 服务地址")
    ollama_model: str = Field(default=OLLAMA_DEFAULTS.model, description="Ollama 默认模型")

    # ---- 云端 Provider（OpenAI 兼容接口，仅在配置 API key 时启用）----
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API 密钥")
    openai_base_url: str = Field(default=OPENAI_DEFAULTS.base_url)
    openai_model: str = Field(default=OPENAI_DEFAULTS.model)

    kimi_api_key: Optional[str] = Field(default=None, description="Kimi API 密钥")
    kimi_base_url: str = Field(default=KIMI_DEFAULTS.base_url)
    kimi_model: str = Field(default=KIMI_DEFAULTS.model)

    glm_api_key: Optional[str] = Field(default=None, description="GLM API 密钥")
    glm_base_url: str = Field(default=GLM_DEFAULTS.base_url)
    glm_model: str = Field(default=GLM_DEFAULTS.model)

    http_timeout: float = Field(default=120.0, ge=1.0, description="上游请求超时时间（秒）")
    probe_timeout: float = Field(default=2.0, gt=0, description="启动探测超时时间（秒）")

    storage_root: str = Field(default="~/.chat_core", description="存储根目录，会话位于 sessions/ 下")
    log_dir: str = Field(default="logs", description="日志目录")
    log_level: str = Field(default="INFO", description="日志级别")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    server_host: str = Field(default="127.0.0.1", description="HTTP 监听地址")
    server_port: int = Field(default=8080, ge=1, le=65535, description="HTTP 监听端口")
    session_key_prefix: str = Field(default="webui:", description="服务端生成会话键的前缀")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("openai_api_key", "kimi_api_key", "glm_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )

    def provider_connections(self) -> Dict[str, ProviderConnection]:
        """解析出已配置的 Provider 连接参数。

        Ollama 只要启用就会返回（是否可用由启动探测决定）；
        云端 Provider 只有在配置了 API key 时才返回。
        """

        conns: Dict[str, ProviderConnection] = {}
        if self.ollama_enabled:
            conns["ollama"] = ProviderConnection(
                name="ollama",
                kind="ollama",
                base_url=self.ollama_base_url.rstrip("/"),
                model=self.ollama_model,
                timeout=self.http_timeout,
            )
        cloud = (
            ("openai", self.openai_api_key, self.openai_base_url, self.openai_model),
            ("kimi", self.kimi_api_key, self.kimi_base_url, self.kimi_model),
            ("glm", self.glm_api_key, self.glm_base_url, self.glm_model),
        )
        for name, api_key, base_url, model in cloud:
            if not api_key:
                continue
            conns[name] = ProviderConnection(
                name=name,
                kind="openai",
                base_url=base_url.rstrip("/"),
                model=model,
                api_key=api_key,
                timeout=self.http_timeout,
            )
        return conns

    @property
    def sessions_dir(self) -> Path:
        return Path(self.storage_root).expanduser() / "sessions"
