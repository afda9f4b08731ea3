import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from retrieval_service import __version__
from retrieval_service.api.routes.knowledge import router as knowledge_router
from retrieval_service.services.http_client import http_client_manager
from retrieval_service.shared.correlation import CorrelationMiddleware
from retrieval_service.shared.errors import (
    KnowledgeError,
    get_correlation_id,
    internal_error,
    knowledge_error_response,
)
from retrieval_service.shared.logging_config import setup_logging

SERVICE_NAME = "knowledge-retrieval-service"

setup_logging(service_name=SERVICE_NAME)
logger = logging.getLogger("Retrieval.Main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    await http_client_manager.startup()
    logger.info("Knowledge retrieval service started", extra={"version": __version__})
    yield
    await http_client_manager.shutdown()


app = FastAPI(
    title="Knowledge Retrieval Service",
    description="Chunking, embeddings and hybrid search over per-owner knowledge bases",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(CorrelationMiddleware)
app.include_router(knowledge_router, prefix="/api/v1")


@app.exception_handler(KnowledgeError)
async def handle_knowledge_error(request: Request, exc: KnowledgeError):
    logger.warning(
        "Request rejected",
        extra={"error_code": exc.code.value, "status_code": exc.status_code, "path": request.url.path},
    )
    return knowledge_error_response(exc, correlation_id=get_correlation_id(request))


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.url.path}: {exc}")
    return internal_error(correlation_id=get_correlation_id(request))


@app.get("/")
async def root():
    return {"message": "Knowledge Retrieval Service Running"}
