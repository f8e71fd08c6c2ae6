# payproof/api/main.py

import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, List, Optional, Union

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from payproof import __version__
from payproof.config.llm_config import VisionConfig, get_vision_extractor
from payproof.config.settings import AdmissionConfig, VerificationConfig
from payproof.errors import AdmissionError, VerificationInternalError
from payproof.pipelines.decision import DecisionEngine
from payproof.pipelines.image_forensics import score_image
from payproof.pipelines.qr_decode import decode_qr
from payproof.pipelines.verify import ForensicScorer, QrDecoder, verify_receipt_with_deadline
from payproof.pipelines.vision_extract import VisionExtractor
from payproof.validation.image_admission import admit_image, validate_expected

logger = logging.getLogger(__name__)


# ---------- Pydantic models ----------

class VerifyRequest(BaseModel):
    """
    Body of POST /verify.

    Field names follow the mobile client (camelCase); snake_case is
    accepted too. Values are validated by the admission layer so that
    every bad input answers 400 with an error code.
    """
    model_config = {"populate_by_name": True}

    image_base64: Optional[str] = Field(None, alias="imageBase64")
    image_mime: Optional[str] = Field(None, alias="imageMime")
    expected_amount: Optional[Any] = Field(None, alias="expectedAmount")
    expected_date: Optional[Any] = Field(None, alias="expectedDate")
    expected_time: Optional[str] = Field(None, alias="expectedTime")
    acceptable_destinations: Optional[List[Union[str, int]]] = Field(None, alias="acceptableDestinations")


def _new_request_id() -> str:
    return uuid.uuid4().hex[:8]


def create_app(
    config: Optional[VerificationConfig] = None,
    vision_config: Optional[VisionConfig] = None,
    extractor: Optional[VisionExtractor] = None,
    engine: Optional[DecisionEngine] = None,
    admission: Optional[AdmissionConfig] = None,
    qr_decoder: QrDecoder = decode_qr,
    forensic_scorer: ForensicScorer = score_image,
) -> FastAPI:
    """
    Build the HTTP app.

    All policy is resolved here, once; request handlers only read it.
    """
    if engine is None:
        engine = DecisionEngine(config or VerificationConfig.from_env())
    if vision_config is None:
        vision_config = VisionConfig.from_env()
    if extractor is None:
        extractor = get_vision_extractor(vision_config)
    admission = admission or AdmissionConfig.from_env()

    app = FastAPI(
        title="PayProof API",
        description="Payment receipt verification: reconciles a receipt image against the expected transaction.",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.engine = engine
    app.state.extractor = extractor
    app.state.vision_config = vision_config
    app.state.admission = admission

    model_name = getattr(extractor, "model", None) or vision_config.model

    @app.middleware("http")
    async def request_logging(request: Request, call_next):
        request.state.request_id = _new_request_id()
        request.state.started = time.time()
        logger.info("[%s] %s %s", request.state.request_id, request.method, request.url.path)
        response = await call_next(request)
        logger.info(
            "[%s] -> %d in %dms",
            request.state.request_id,
            response.status_code,
            int((time.time() - request.state.started) * 1000),
        )
        return response

    def _debug(request: Request) -> dict:
        return {
            "request_id": request.state.request_id,
            "elapsed_ms": int((time.time() - request.state.started) * 1000),
            "model": model_name,
        }

    @app.exception_handler(RequestValidationError)
    async def invalid_body(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "error": "invalid_request",
                "message": "request body must be a JSON object with the documented fields",
                "debug": _debug(request),
            },
        )

    # ---------- API endpoints ----------

    @app.get("/health", tags=["meta"])
    def health_check():
        """Liveness check for monitoring and load balancers."""
        return {
            "status": "ok",
            "service": "PayProof",
            "version": __version__,
            "vision_provider": vision_config.provider,
            "model": model_name,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/", tags=["meta"])
    def root():
        return {
            "service": "PayProof API",
            "version": __version__,
            "description": "Payment receipt verification",
            "docs": "/docs",
            "health": "/health",
            "verify": "/verify",
        }

    @app.post("/verify", tags=["verification"])
    def verify_endpoint(payload: VerifyRequest, request: Request):
        """
        Verify a receipt image against the expected transaction.

        - **status**: verified / pending_review / rejected
        - **confidence**: 0.0-1.0
        - **reasons**: human-readable audit trail
        """
        try:
            expected = validate_expected(
                payload.expected_amount,
                payload.expected_date,
                payload.expected_time,
                payload.acceptable_destinations,
                shorthand=engine.config.amount_shorthand_convention,
            )
            image_bytes, mime = admit_image(payload.image_base64, payload.image_mime, admission)
        except AdmissionError as e:
            logger.info("[%s] admission refused: %s", request.state.request_id, e.code)
            body = e.to_dict()
            body["debug"] = _debug(request)
            return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=body)

        try:
            decision = verify_receipt_with_deadline(
                image_bytes, mime, expected, extractor, engine, admission.verify_timeout_s,
                qr_decoder, forensic_scorer,
            )
        except VerificationInternalError:
            logger.error("[%s] verification failed internally", request.state.request_id)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"error": "internal_error", "debug": _debug(request)},
            )

        body = decision.to_dict()
        body["debug"] = _debug(request)
        logger.info(
            "[%s] decision=%s confidence=%.2f",
            request.state.request_id, decision.status, decision.confidence,
        )
        return body

    return app


app = create_app()
