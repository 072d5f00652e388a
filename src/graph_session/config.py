"""Session configuration via pydantic-settings."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class GraphSessionSettings(BaseSettings):
    client_id: str = ""
    # Comma-separated scope list, e.g. "User.Read,Mail.Read"
    scopes: str = "User.Read"
    authority: str = "https://login.microsoftonline.com/common"
    graph_base_url: str = "https://graph.microsoft.com/v1.0"
    refresh_margin_seconds: int = 300
    http_timeout_seconds: float = 30.0
    log_level: str = "WARNING"

    model_config = {"env_prefix": "GRAPH_SESSION_", "env_file": ".env", "extra": "ignore"}

    @property
    def scope_list(self) -> list[str]:
        """Parse comma-separated scopes, dropping blanks."""
        return [scope.strip() for scope in self.scopes.split(",") if scope.strip()]

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id.strip() and self.scope_list)


settings = GraphSessionSettings()
