"""
Build settings for trace-weaver.
"""
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_FILE = Path.cwd() / ".env"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Master switch: when off, sources are mirrored without instrumentation
    enabled: bool = Field(default=True, alias="TRACE_WEAVER_ENABLED")

    source_dir: Path = Field(default=Path("."), alias="TRACE_WEAVER_SOURCE_DIR")
    output_dir: Path = Field(default=Path("dist/instrumented"), alias="TRACE_WEAVER_OUTPUT_DIR")
    # Empty means auto-detect (source root holding __init__.py)
    source_package: str = Field(default="", alias="TRACE_WEAVER_SOURCE_PACKAGE")

    route_receivers: str = Field(
        default="app,router,bp,blueprint",
        alias="TRACE_WEAVER_ROUTE_RECEIVERS",
    )
    copy_assets: bool = Field(default=True, alias="TRACE_WEAVER_COPY_ASSETS")
    log_level: str = Field(default="INFO", alias="TRACE_WEAVER_LOG_LEVEL")

    @property
    def route_receiver_set(self) -> frozenset[str]:
        return frozenset(name.strip() for name in self.route_receivers.split(",") if name.strip())


@lru_cache
def get_settings() -> Settings:
    return Settings()
