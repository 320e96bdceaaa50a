"""
Archivist HTTP API

Thin FastAPI surface over the ingestion pipeline, the photo upload step, the
backfill trigger, the dedup probe and the similarity-search delegate. Every
route except /health requires the bearer token; authentication runs before
any request body is read or any store is touched.
"""
from __future__ import annotations

import argparse
import hmac
import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from starlette.datastructures import UploadFile

from core.addressing import blob_key, normalize_id
from core.blob_store import BlobStore, build_blob_store
from core.categories import get_category
from core.config import Settings
from core.errors import ArchiveError, AuthError, ValidationError
from core.index import MetadataIndex
from core.queue import MessageQueue, build_queue
from services.backfill import BackfillTrigger
from services.enrichment import EnvironmentEnricher
from services.ingest import IngestionPipeline
from services.photos import PHOTO_CATEGORY, ImageHostClient, PhotoUploader
from services.search import SimilaritySearchClient

logger = logging.getLogger(__name__)


@dataclass
class ArchiveServices:
    blob_store: BlobStore
    index: MetadataIndex
    queue: MessageQueue
    search: SimilaritySearchClient
    enricher: EnvironmentEnricher | None = None
    images: ImageHostClient | None = None

    def __post_init__(self) -> None:
        self.pipeline = IngestionPipeline(
            blob_store=self.blob_store,
            index=self.index,
            queue=self.queue,
            enricher=self.enricher,
        )
        self.backfill = BackfillTrigger(blob_store=self.blob_store, queue=self.queue)
        self.photos = PhotoUploader(pipeline=self.pipeline, images=self.images or ImageHostClient(""))


async def build_services(settings: Settings) -> ArchiveServices:
    index = await MetadataIndex.connect(settings.database_url)
    queue = build_queue(settings)
    await queue.ensure_ready()
    return ArchiveServices(
        blob_store=build_blob_store(settings),
        index=index,
        queue=queue,
        search=SimilaritySearchClient(settings.search_service_url, api_key=settings.search_api_key),
        enricher=EnvironmentEnricher(
            settings.enrichment_endpoints,
            api_key=settings.enrichment_api_key,
            place_details_url=settings.place_details_url,
        ),
        images=ImageHostClient(settings.images_upload_url, api_token=settings.images_api_token),
    )


def bearer_token(request: Request) -> str | None:
    header = request.headers.get("Authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def _read_json(request: Request):
    raw = await request.body()
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValidationError("body", "Invalid JSON in request body") from exc


def create_app(settings: Settings | None = None, services: ArchiveServices | None = None) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = services is None
        app.state.services = services or await build_services(settings)
        logger.info("Archivist API ready")
        yield
        if owned:
            await app.state.services.index.close()
        logger.info("Archivist API shut down")

    app = FastAPI(title="Archivist", description="Personal content archive API", lifespan=lifespan)

    def require_auth(request: Request) -> None:
        token = bearer_token(request)
        expected = settings.auth_token
        if not token or not expected or not hmac.compare_digest(token.encode(), expected.encode()):
            raise AuthError()

    def svc(request: Request) -> ArchiveServices:
        return request.app.state.services

    @app.exception_handler(ArchiveError)
    async def archive_error_handler(request: Request, exc: ArchiveError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"error": "validation_error", "message": str(exc.errors())})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled exception on {request.method} {request.url.path}")
        return JSONResponse(status_code=500, content={"error": "internal_error", "message": "Internal server error"})

    authed = [Depends(require_auth)]

    @app.get("/health")
    async def health():
        return {"ok": True, "ts": int(time.time() * 1000)}

    @app.post("/upload", dependencies=authed)
    async def upload(request: Request):
        body = await _read_json(request)
        if not isinstance(body, dict) or not isinstance(body.get("type"), str) or not body["type"]:
            raise ValidationError("type", 'Missing or invalid "type" field')
        result = await svc(request).pipeline.submit(body["type"], body.get("data"))
        return JSONResponse(status_code=201 if result.created else 200, content=result.to_dict())

    @app.post("/images", dependencies=authed)
    async def upload_image(request: Request):
        form = await request.form()
        upload = form.get("file")
        if not isinstance(upload, UploadFile):
            raise ValidationError("file", "No file provided in request")
        fields = {k: v for k, v in form.items() if isinstance(v, str)}
        result = await svc(request).photos.upload(
            await upload.read(),
            filename=upload.filename or "upload",
            content_type=upload.content_type or "",
            fields=fields,
        )
        return JSONResponse(status_code=201 if result["created"] else 200, content=result)

    @app.post("/ingest/all", dependencies=authed)
    async def ingest_all(request: Request):
        count = await svc(request).backfill.run("")
        return {"count": count}

    @app.post("/ingest/object/{object_key:path}", dependencies=authed)
    async def ingest_object(object_key: str, request: Request):
        if not object_key.endswith(".json"):
            raise ValidationError("objectKey", "Object key must name a .json envelope")
        await svc(request).queue.send({"objectKey": object_key})
        return {"count": 1, "objectKey": object_key}

    @app.head("/api/photos/check/{content_hash}", dependencies=authed)
    async def check_photo(content_hash: str, request: Request):
        content_id = normalize_id(content_hash)
        found = await svc(request).pipeline.find_existing(PHOTO_CATEGORY, content_id)
        if found is None:
            return Response(status_code=404)
        return Response(status_code=200, headers={"X-Content-Id": content_id, "X-Object-Key": blob_key(PHOTO_CATEGORY, content_id)})

    @app.post("/{category}/ingest", dependencies=authed)
    async def ingest_category(category: str, request: Request):
        count = await svc(request).backfill.run(get_category(category).prefix)
        return {"count": count}

    @app.get("/{category}/search", dependencies=authed)
    async def search(category: str, request: Request, q: str = "", limit: int = 10):
        matches = await svc(request).search.search(category, q, limit)
        return {"results": [m.to_dict() for m in matches]}

    @app.post("/{category}", dependencies=authed)
    async def create_item(category: str, request: Request):
        get_category(category)
        data = await _read_json(request)
        result = await svc(request).pipeline.submit(category, data)
        return JSONResponse(status_code=201 if result.created else 200, content=result.to_dict())

    return app


def main(argv: list[str] | None = None) -> int:
    import uvicorn

    load_dotenv()
    settings = Settings.from_env()
    p = argparse.ArgumentParser(prog="archivist-api", description="Run the Archivist HTTP API.")
    p.add_argument("--host", default="0.0.0.0")
    p.add_argument("--port", type=int, default=8000)
    args = p.parse_args(argv)
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(create_app(settings), host=args.host, port=args.port, log_level=settings.log_level.lower())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
