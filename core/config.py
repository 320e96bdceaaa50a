"""Runtime configuration loaded from the environment (and ``.env``)."""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import Any


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def db_dsn_from_env() -> str:
    dsn = os.getenv("DATABASE_URL")
    if dsn:
        return dsn
    host = os.getenv("POSTGRES_HOST", "localhost")
    port = os.getenv("POSTGRES_PORT", "5432")
    user = os.getenv("POSTGRES_USER", "archivist")
    password = os.getenv("POSTGRES_PASSWORD", "archivist_password")
    db = os.getenv("POSTGRES_DB", "archivist")
    return f"postgresql://{user}:{password}@{host}:{port}/{db}"


def parse_endpoints(raw: str | None) -> dict[str, str]:
    """Parse ``product=url,product=url`` into a mapping."""
    endpoints: dict[str, str] = {}
    for part in (raw or "").split(","):
        name, sep, url = part.partition("=")
        if sep and name.strip() and url.strip():
            endpoints[name.strip()] = url.strip()
    return endpoints


@dataclass
class Settings:
    database_url: str
    auth_token: str = ""

    blob_backend: str = "filesystem"
    blob_root: str = "./data/blobs"
    s3_bucket: str = ""
    s3_endpoint_url: str | None = None
    s3_region: str = "auto"
    s3_access_key_id: str | None = None
    s3_secret_access_key: str | None = None

    rabbitmq_enabled: bool = True
    rabbitmq_management_url: str = "http://rabbitmq:15672"
    rabbitmq_user: str = "archivist"
    rabbitmq_password: str = "archivist_password"
    rabbitmq_vhost: str = "/"
    queue_name: str = "archivist.index"
    queue_max_attempts: int = 5

    worker_poll_interval: float = 1.0
    worker_batch_size: int = 10
    worker_concurrency: int = 4

    search_service_url: str = ""
    search_api_key: str = ""
    enrichment_endpoints: dict[str, str] = field(default_factory=dict)
    enrichment_api_key: str = ""
    place_details_url: str = ""
    images_upload_url: str = ""
    images_api_token: str = ""

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> Settings:
        return cls(
            database_url=db_dsn_from_env(),
            auth_token=os.getenv("AUTH_TOKEN", ""),
            blob_backend=os.getenv("BLOB_BACKEND", "filesystem").strip().lower(),
            blob_root=os.getenv("BLOB_ROOT", "./data/blobs"),
            s3_bucket=os.getenv("S3_BUCKET", ""),
            s3_endpoint_url=os.getenv("S3_ENDPOINT_URL") or None,
            s3_region=os.getenv("S3_REGION", "auto"),
            s3_access_key_id=os.getenv("S3_ACCESS_KEY_ID") or None,
            s3_secret_access_key=os.getenv("S3_SECRET_ACCESS_KEY") or None,
            rabbitmq_enabled=_env_bool("RABBITMQ_ENABLED", True),
            rabbitmq_management_url=os.getenv("RABBITMQ_MANAGEMENT_URL", "http://rabbitmq:15672").rstrip("/"),
            rabbitmq_user=os.getenv("RABBITMQ_USER", "archivist"),
            rabbitmq_password=os.getenv("RABBITMQ_PASSWORD", "archivist_password"),
            rabbitmq_vhost=os.getenv("RABBITMQ_VHOST", "/"),
            queue_name=os.getenv("ARCHIVIST_QUEUE", "archivist.index"),
            queue_max_attempts=int(os.getenv("QUEUE_MAX_ATTEMPTS", 5)),
            worker_poll_interval=float(os.getenv("WORKER_POLL_INTERVAL", 1.0)),
            worker_batch_size=int(os.getenv("WORKER_BATCH_SIZE", 10)),
            worker_concurrency=int(os.getenv("WORKER_CONCURRENCY", 4)),
            search_service_url=os.getenv("SEARCH_SERVICE_URL", "").rstrip("/"),
            search_api_key=os.getenv("SEARCH_API_KEY", ""),
            enrichment_endpoints=parse_endpoints(os.getenv("ENRICHMENT_ENDPOINTS")),
            enrichment_api_key=os.getenv("ENRICHMENT_API_KEY", ""),
            place_details_url=os.getenv("PLACE_DETAILS_URL", "").rstrip("/"),
            images_upload_url=os.getenv("IMAGES_UPLOAD_URL", ""),
            images_api_token=os.getenv("IMAGES_API_TOKEN", ""),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    def redacted(self) -> dict[str, Any]:
        out = dict(self.__dict__)
        out["database_url"] = re.sub(r"://([^:/@]+):[^@]*@", r"://\1:***@", self.database_url)
        for key in ("auth_token", "rabbitmq_password", "s3_secret_access_key", "search_api_key", "enrichment_api_key", "images_api_token"):
            if out.get(key):
                out[key] = "***"
        return out


__all__ = ["Settings", "db_dsn_from_env", "parse_endpoints"]
