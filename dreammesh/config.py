from __future__ import annotations

import os
import shutil
from pathlib import Path

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


SERVICE_ROOT = Path(__file__).resolve().parents[1]

load_dotenv(SERVICE_ROOT / ".env", override=False)


def _default_blender_executable() -> Path:
    candidates: list[str] = [
        os.getenv("DREAMMESH_BLENDER_EXECUTABLE", "").strip(),
        os.getenv("BLENDER_PATH", "").strip(),
        os.getenv("BLENDER_EXEC", "").strip(),
        shutil.which("blender") or "",
        "/usr/bin/blender",
    ]
    for candidate in candidates:
        if not candidate:
            continue
        path = Path(candidate).expanduser()
        if path.exists():
            return path
    return Path("/usr/bin/blender")


class DreamMeshSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="DREAMMESH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    service_name: str = "dreammesh-assembly-service"
    host: str = "0.0.0.0"
    port: int = 8110
    log_level: str = "INFO"

    # LLM API keys / models
    anthropic_api_key: str = Field(default_factory=lambda: os.getenv("ANTHROPIC_API_KEY", ""))
    gemini_api_key: str = Field(default_factory=lambda: os.getenv("GEMINI_API_KEY", ""))
    gemini_model: str = Field(default_factory=lambda: os.getenv("GEMINI_MODEL", "gemini-2.5-pro"))
    # Visual QC always runs on the fast vision model
    gemini_qc_model: str = Field(default_factory=lambda: os.getenv("GEMINI_QC_MODEL", "gemini-2.5-flash"))
    default_llm_name: str = "gemini"
    default_qc_llm_name: str = "gemini"

    # Blender render stage
    blender_executable: Path = Field(default_factory=_default_blender_executable)
    blender_timeout_seconds: int = Field(default=180, ge=10, le=1200)
    render_resolution: int = Field(default=512, ge=128, le=2048)
    camera_fov_degrees: float = Field(default=45.0, gt=1.0, lt=179.0)
    framing_padding: float = Field(default=1.5, ge=1.0, le=5.0)
    fallback_camera_distance: float = Field(default=5.0, gt=0.0)

    # Pipeline
    component_max_attempts: int = Field(default=4, ge=1, le=10)
    attachment_max_attempts: int = Field(default=4, ge=1, le=10)
    component_settle_seconds: float = Field(default=0.2, ge=0.0, le=10.0)
    assembly_settle_seconds: float = Field(default=0.4, ge=0.0, le=10.0)
    sandbox_timeout_seconds: float = Field(default=10.0, gt=0.0, le=300.0)
    max_cost_per_request_usd: float = Field(default=10.0, ge=0.1, le=500.0)
    default_export_formats: list[str] = Field(default_factory=lambda: ["glb"])

    # Storage
    storage_dir: Path = Field(default_factory=lambda: SERVICE_ROOT / "data")
    sessions_subdir: str = "sessions"
    renders_subdir: str = "renders"

    # Concurrency (each run owns its own render stage; generated code runs on the thread pool)
    max_concurrent_jobs: int = Field(default=1, ge=1, le=8)
    max_queue_size: int = Field(default=32, ge=1, le=10000)
    sync_wait_timeout_seconds: int = Field(default=1800, ge=60, le=7200)

    # Job lifecycle
    finished_job_ttl_seconds: int = Field(default=3600, ge=60, le=172800)
    cleanup_interval_seconds: int = Field(default=30, ge=5, le=3600)
    max_job_records: int = Field(default=500, ge=10, le=200000)

    # Auth
    api_key: str | None = None

    @field_validator("blender_executable", mode="after")
    @classmethod
    def _resolve_blender(cls, value: Path) -> Path:
        return value.expanduser().resolve()

    @field_validator("default_export_formats", mode="after")
    @classmethod
    def _check_formats(cls, value: list[str]) -> list[str]:
        formats = [v.lower() for v in value]
        unknown = set(formats) - {"glb", "obj", "stl"}
        if unknown:
            raise ValueError(f"Unsupported export formats: {sorted(unknown)}")
        return formats

    @property
    def sessions_dir(self) -> Path:
        return self.storage_dir / self.sessions_subdir

    @property
    def renders_dir(self) -> Path:
        return self.storage_dir / self.renders_subdir

    @property
    def claude_available(self) -> bool:
        return bool(self.anthropic_api_key)

    @property
    def gemini_available(self) -> bool:
        return bool(self.gemini_api_key)


settings = DreamMeshSettings()
