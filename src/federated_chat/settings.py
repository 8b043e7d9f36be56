"""Process settings read from the environment (and an optional ``.env`` file)."""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

DEFAULT_CONFIG_PATH = "~/.config/federated_chat/mcp.json"


@dataclass
class Settings:
    mcp_config_path: str = DEFAULT_CONFIG_PATH
    provider: str = "openai"
    model: str = "gpt-5"
    max_steps: int = 10
    max_tokens: int = 64000
    quota_status: int = 403
    openai_api_key: Optional[str] = None
    proxy_url: Optional[str] = None
    proxy_token: Optional[str] = None
    local_url: str = "http://localhost:9870/v1"
    workspace: str = "."

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "Settings":
        if dotenv:
            load_dotenv()
        return cls(
            mcp_config_path=os.getenv("FEDCHAT_MCP_CONFIG", DEFAULT_CONFIG_PATH),
            provider=os.getenv("FEDCHAT_PROVIDER", "openai"),
            model=os.getenv("FEDCHAT_MODEL", "gpt-5"),
            max_steps=int(os.getenv("FEDCHAT_MAX_STEPS", "10")),
            max_tokens=int(os.getenv("FEDCHAT_MAX_TOKENS", "64000")),
            quota_status=int(os.getenv("FEDCHAT_QUOTA_STATUS", "403")),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            proxy_url=os.getenv("FEDCHAT_PROXY_URL"),
            proxy_token=os.getenv("FEDCHAT_PROXY_TOKEN"),
            local_url=os.getenv("FEDCHAT_LOCAL_URL", "http://localhost:9870/v1"),
            workspace=os.getenv("FEDCHAT_WORKSPACE", "."),
        )
