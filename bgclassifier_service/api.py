"""
FastAPI layer exposing the background classifier.

Endpoints:
 - GET /health
 - POST /predict          (bearer token)
 - POST /predict-base64   (bearer token when PROTECT_BASE64_ENDPOINT is set)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import secrets
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from . import config
from .errors import ServiceError
from .fetch import decode_base64_image, fetch_image
from .inference import INFERENCE_LOCK
from .memory import MemoryReclaimer
from .model_loader import ModelState, get_model_store
from .pipeline import predict_image

settings = config.get_settings()
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)

SERVICE_NAME = "ml-background-classifier"

reclaimer = MemoryReclaimer(
    interval_seconds=settings.reclaim_interval_seconds,
    every_n_inferences=settings.reclaim_every_n_inferences,
    lock=INFERENCE_LOCK,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    store = get_model_store()
    if store.state is not ModelState.READY:
        logger.info("Loading classifier model...")
        store.load(settings.model_path, device=settings.device)
    if settings.reclaim_interval_seconds > 0 or settings.reclaim_every_n_inferences > 0:
        reclaimer.start()
    try:
        yield
    finally:
        reclaimer.stop()


app = FastAPI(title="ML Background Classifier Service", version="0.1.0", lifespan=lifespan)


class PredictRequest(BaseModel):
    imageUrl: Optional[str] = None


class PredictBase64Request(BaseModel):
    imageData: Optional[str] = None


class ScoresResponse(BaseModel):
    remove: float
    keep: float
    weightedRemove: float


class PredictResponse(BaseModel):
    shouldRemoveBackground: bool
    confidence: float
    scores: ScoresResponse
    decision: str


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


# Absent bodies, malformed JSON and wrong field types count as a missing field.
_REQUIRED_FIELDS = {"/predict": "imageUrl", "/predict-base64": "imageData"}


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    field = _REQUIRED_FIELDS.get(request.url.path)
    logger.info("Rejected request body for %s: %s", request.url.path, exc.errors())
    message = f"{field} is required" if field else "Invalid request body"
    return JSONResponse(status_code=400, content={"error": message})


def _check_token(authorization: Optional[str]) -> None:
    if not authorization:
        raise HTTPException(status_code=401, detail="Authorization header is required")
    token = authorization[len("Bearer "):] if authorization.startswith("Bearer ") else authorization
    if not secrets.compare_digest(token.encode("utf-8"), (settings.api_token or "").encode("utf-8")):
        raise HTTPException(status_code=403, detail="Invalid API token")


def authenticate(authorization: Optional[str] = Header(None)) -> None:
    _check_token(authorization)


def authenticate_base64(authorization: Optional[str] = Header(None)) -> None:
    if settings.protect_base64_endpoint:
        _check_token(authorization)


def _prediction_failed(exc: ServiceError) -> JSONResponse:
    return JSONResponse(status_code=500, content={"error": "Prediction failed", "details": str(exc)})


@app.get("/health")
def health():
    return {"status": "healthy", "service": SERVICE_NAME, "model": get_model_store().state.value}


@app.post("/predict", response_model=PredictResponse, dependencies=[Depends(authenticate)])
def predict(body: PredictRequest):
    if not body.imageUrl:
        raise HTTPException(status_code=400, detail="imageUrl is required")

    logger.info("Processing image: %s", body.imageUrl)
    try:
        image_bytes = fetch_image(
            body.imageUrl,
            timeout_seconds=settings.fetch_timeout_seconds,
            max_bytes=settings.max_image_bytes,
        )
        result = predict_image(image_bytes, reclaimer=reclaimer, settings=settings)
    except ServiceError as exc:
        logger.error("Prediction failed for %s: %s: %s", body.imageUrl, type(exc).__name__, exc)
        return _prediction_failed(exc)

    logger.info("Prediction result: %s", result)
    return result.to_dict()


@app.post("/predict-base64", response_model=PredictResponse, dependencies=[Depends(authenticate_base64)])
def predict_base64(body: PredictBase64Request):
    if not body.imageData:
        raise HTTPException(status_code=400, detail="imageData is required")

    try:
        image_bytes = decode_base64_image(body.imageData, max_bytes=settings.max_image_bytes)
        result = predict_image(image_bytes, reclaimer=reclaimer, settings=settings)
    except ServiceError as exc:
        logger.error("Base64 prediction failed: %s: %s", type(exc).__name__, exc)
        return _prediction_failed(exc)

    logger.info("Prediction result: %s", result)
    return result.to_dict()
