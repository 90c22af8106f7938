"""Configuration settings for the change workflow."""

from decimal import Decimal
from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Paths
    project_root: Path = Path(".")
    changes_dir: Path = Path("changeloop") / "changes"
    state_db_name: str = "state.db"

    # Agent CLI commands
    gemini_cmd: str = "gemini"
    codex_cmd: str = "codex"
    claude_cmd: str = "claude"

    # Timeouts (seconds)
    agent_timeout: int = 600  # 10 minutes
    list_sessions_timeout: int = 30

    # Retry policy for agent calls
    max_retries: int = 2
    retry_delay_seconds: float = 5.0

    # Iteration budgets
    planning_iterations: int = 3
    self_review_iterations: int = 1

    # Model -> [input_per_million, output_per_million]
    pricing_overrides: dict[str, list[Decimal]] = {}

    def change_dir(self, change_id: str, project_root: Path | None = None) -> Path:
        """Directory holding the artifacts and state of a change."""
        root = project_root if project_root is not None else self.project_root
        return root / self.changes_dir / change_id

    class Config:
        env_prefix = "CHANGELOOP_"
        env_file = ".env"


# Global settings instance
settings = Settings()
