"""Main FastAPI application for the Question Detection API."""

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, ValidationError
from typing import Optional, Dict, List
from datetime import datetime
import json
import time

from config import config, DETECTION_MODES
from detection.base import DetectionStrategy
from detection.errors import ExtractionFailure
from detection.factory import build_ground_truth_extractor, build_strategy
from detection.pipeline import DetectionPipeline
from detection.utterance_buffer import build_transcript
from evaluation.evaluator import Evaluator
from evaluation.ground_truth import GroundTruthExtractor
from logger import log_info, log_error, log_warning, log_debug
from metrics import get_metrics
from models import GroundTruthQuestion, TranscriptEvent

VERSION = "1.0.0"

# Initialize FastAPI app
app = FastAPI(
    title="Question Detection API",
    description="Live question detection over streaming speech transcripts",
    version=VERSION
)

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.cors_origins.split(",") if config.cors_origins != "*" else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all incoming requests."""
    start_time = time.time()
    response = await call_next(request)
    log_info(f"Request completed: {request.method} {request.url.path} - {response.status_code}",
             method=request.method, path=request.url.path, status_code=response.status_code,
             duration=time.time() - start_time)
    return response


# Strategies are stateless across sessions, built once per mode
strategies: Dict[str, DetectionStrategy] = {}


def get_strategy(mode: Optional[str] = None) -> DetectionStrategy:
    """Get (lazily building) the strategy for a detection mode."""
    mode = mode or config.detection_mode
    if mode not in strategies:
        log_info(f"Initializing {mode} strategy...")
        strategies[mode] = build_strategy(mode)
    return strategies[mode]


ground_truth_extractor: Optional[GroundTruthExtractor] = None


def get_ground_truth_extractor() -> GroundTruthExtractor:
    """Get (lazily building) the ground truth extractor."""
    global ground_truth_extractor
    if ground_truth_extractor is None:
        log_info(f"Initializing ground truth extractor ({config.ground_truth_model})...")
        ground_truth_extractor = build_ground_truth_extractor()
    return ground_truth_extractor


# ============= Pydantic Models =============

class TranscriptMessage(BaseModel):
    type: str = "transcript"
    sequence_number: int = Field(..., ge=0)
    text: str = Field("", max_length=10_000)
    is_final: bool = False
    timestamp_ms: int = Field(..., ge=0)


class EventPayload(BaseModel):
    session_id: str = Field(..., min_length=1, max_length=200)
    sequence_number: int = Field(..., ge=0)
    text: str = Field("", max_length=10_000)
    is_final: bool = False
    timestamp_ms: int = Field(..., ge=0)


class EvaluateRequest(BaseModel):
    events: List[EventPayload] = Field(..., max_length=100_000)
    ground_truth: Optional[List[str]] = Field(
        None, description="Ground truth questions in transcript order, extracted from the transcript when omitted"
    )
    mode: Optional[str] = Field(None, description="Detection mode (defaults to DETECTION_MODE)")
    match_threshold: Optional[float] = Field(None, ge=0.0, le=1.0)


class EvaluateResponse(BaseModel):
    session_id: str
    strategy: str
    ground_truth_count: int
    ground_truth: List[str]
    detected: int
    true_positive: int
    false_positive: int
    false_negative: int
    precision: float
    recall: float
    f1: float
    average_latency_ms: float
    p95_latency_ms: float


class HealthResponse(BaseModel):
    status: str
    version: str
    detection_mode: str
    timestamp: str


# ============= REST Endpoints =============

@app.get("/", response_model=dict)
async def root():
    """Root endpoint."""
    return {
        "message": "Question Detection API",
        "version": VERSION,
        "docs": "/docs",
        "health": "/api/health"
    }


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return await get_metrics()


@app.get("/api/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    status = "healthy" if not config.problems() else "degraded"
    log_debug(f"Health check: {status}")
    return HealthResponse(
        status=status,
        version=VERSION,
        detection_mode=config.detection_mode,
        timestamp=datetime.utcnow().isoformat()
    )


async def extract_ground_truth(events: List[TranscriptEvent], session_id: str) -> List[GroundTruthQuestion]:
    """Extract ground truth from the full reconstructed transcript."""
    try:
        extractor = get_ground_truth_extractor()
    except ValueError as e:
        log_warning(f"Ground truth extractor unavailable: {e}")
        raise HTTPException(status_code=503, detail=str(e))

    try:
        return await extractor.extract(build_transcript(events), session_id=session_id)
    except ExtractionFailure as e:
        raise HTTPException(status_code=502, detail=f"Ground truth extraction failed: {e}")


@app.post("/api/evaluate", response_model=EvaluateResponse)
async def evaluate(request: EvaluateRequest):
    """Replay a recorded session through one strategy and score it against ground truth."""
    mode = request.mode or config.detection_mode
    if mode not in DETECTION_MODES:
        raise HTTPException(status_code=400, detail=f"Unknown detection mode '{mode}'")

    try:
        strategy = get_strategy(mode)
    except ValueError as e:
        log_warning(f"Strategy unavailable: {e}", mode=mode)
        raise HTTPException(status_code=503, detail=str(e))

    events = [TranscriptEvent(**event.model_dump()) for event in request.events]
    session_id = events[0].session_id if events else "evaluation"
    if any(event.session_id != session_id for event in events):
        raise HTTPException(status_code=400, detail="All events must belong to one session")

    if request.ground_truth is None:
        ground_truth = await extract_ground_truth(events, session_id)
    else:
        ground_truth = [
            GroundTruthQuestion(session_id=session_id, text=text, approx_position=index)
            for index, text in enumerate(request.ground_truth) if text.strip()
        ]

    result = await Evaluator(match_threshold=request.match_threshold).run(
        events, ground_truth, strategy, session_id=session_id
    )
    return EvaluateResponse(
        session_id=session_id,
        strategy=strategy.name,
        ground_truth_count=len(ground_truth),
        ground_truth=[question.text for question in ground_truth],
        average_latency_ms=result.average_latency_ms,
        p95_latency_ms=result.latency.p95_ms,
        **result.metrics.to_dict()
    )


# ============= WebSocket =============

async def send_candidate(websocket: WebSocket, session_id: str, candidate) -> bool:
    """
    Push a detected question to the client.

    Returns:
        False if the client is gone and nothing more should be sent
    """
    try:
        await websocket.send_json({"type": "question_detected", "candidate": candidate.to_dict()})
        return True
    except (WebSocketDisconnect, RuntimeError, OSError) as e:
        log_warning(f"Could not push candidate, client is gone: {e}", session_id=session_id,
                    utterance_id=candidate.utterance_id)
        return False


@app.websocket("/ws/{session_id}")
async def websocket_session(websocket: WebSocket, session_id: str):
    """
    WebSocket endpoint for one live detection session.

    Client messages:
        {"type": "transcript", "sequence_number", "text", "is_final", "timestamp_ms"}
        {"type": "tick", "now_ms"}
        {"type": "end"}
        {"type": "ping"}

    Server messages:
        {"type": "question_detected", "candidate": {...}}
        {"type": "session_closed", "utterances", "candidates"}
        {"type": "error", "message"}
    """
    await websocket.accept()

    mode = websocket.query_params.get("mode")
    try:
        strategy = get_strategy(mode)
    except ValueError as e:
        log_warning(f"WebSocket rejected: {e}", session_id=session_id)
        await websocket.send_json({"type": "error", "message": str(e)})
        await websocket.close(code=1008)
        return

    connected = True

    async def push(candidate):
        nonlocal connected
        if connected:
            connected = await send_candidate(websocket, session_id, candidate)

    pipeline = DetectionPipeline(session_id, strategy, on_candidate=push)
    log_info(f"WebSocket connected: {session_id}", session_id=session_id, strategy=strategy.name)

    try:
        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "message": "Message is not valid JSON"})
                continue

            message_type = message.get("type") if isinstance(message, dict) else None

            if message_type == "transcript":
                try:
                    payload = TranscriptMessage(**message)
                except ValidationError as e:
                    await websocket.send_json({"type": "error", "message": str(e)})
                    continue
                pipeline.ingest(TranscriptEvent(
                    session_id=session_id,
                    sequence_number=payload.sequence_number,
                    text=payload.text,
                    is_final=payload.is_final,
                    timestamp_ms=payload.timestamp_ms,
                ))

            elif message_type == "tick":
                pipeline.tick(int(message.get("now_ms", 0)))

            elif message_type == "end":
                await pipeline.close()
                await websocket.send_json({
                    "type": "session_closed",
                    "utterances": len(pipeline.utterances),
                    "candidates": len(pipeline.emitted)
                })
                connected = False
                await websocket.close()
                break

            elif message_type == "ping":
                await websocket.send_json({"type": "pong"})

            else:
                await websocket.send_json({"type": "error", "message": f"Unknown message type: {message_type}"})

    except WebSocketDisconnect:
        connected = False
        log_info("WebSocket disconnected", session_id=session_id)
        await pipeline.close()
    except Exception as e:
        connected = False
        log_error(f"WebSocket error: {str(e)}", session_id=session_id)
        await pipeline.close()
        await websocket.close()


# ============= Startup/Shutdown Events =============

@app.on_event("startup")
async def startup_event():
    """Run on application startup."""
    log_info("=" * 60)
    log_info("QUESTION DETECTION API STARTED")
    log_info("=" * 60)
    log_info(f"Version: {VERSION}")
    log_info(f"Detection Mode: {config.detection_mode}")
    log_info(f"Merge Policy: {config.merge_emission_policy} (threshold {config.merge_similarity_threshold})")
    log_info(f"Gemini Model: {config.gemini_model}")
    log_info("=" * 60)

    # Validate config
    if not config.validate():
        log_warning("Configuration validation failed")


@app.on_event("shutdown")
async def shutdown_event():
    """Run on application shutdown."""
    log_info("Shutting down API...")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app:app",
        host=config.api_host,
        port=config.api_port,
        reload=config.api_debug
    )
