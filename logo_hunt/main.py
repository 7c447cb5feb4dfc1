from fastapi import FastAPI, Depends, HTTPException, Request, WebSocket, WebSocketDisconnect, BackgroundTasks
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlmodel import SQLModel, Session, create_engine
from starlette.middleware.base import BaseHTTPMiddleware
from typing import List, Optional, Union

from . import crud, qr_codes, settings
from .cache import get_cache, get_cached_leaderboard, cache_leaderboard, leaderboard_generation
from .deps import get_session
from .logging_utils import setup_logging, get_logger, request_id_ctx

import json
import logging
import re
import time
import uuid

_ID_RE = re.compile(r'^[A-Za-z0-9_-]{1,64}$')

# Rate limiting - store last request times per IP
_RATE_LIMIT_STORE: dict = {}


def check_rate_limit(request: Request, max_requests: int = 30, window_seconds: int = 60) -> bool:
    """
    Simple in-memory sliding window. Returns True if the request is allowed.
    """
    client_ip = request.client.host if request.client else "unknown"
    current_time = time.time()
    cutoff_time = current_time - window_seconds
    recent = [t for t in _RATE_LIMIT_STORE.get(client_ip, []) if t > cutoff_time]
    if len(recent) >= max_requests:
        _RATE_LIMIT_STORE[client_ip] = recent
        return False
    recent.append(current_time)
    _RATE_LIMIT_STORE[client_ip] = recent
    return True


def rate_limit_dependency(max_requests: int = 30, window_seconds: int = 60):
    """Create a dependency function that raises HTTP 429 if rate limited"""
    def dependency(request: Request):
        if not check_rate_limit(request, max_requests, window_seconds):
            raise HTTPException(status_code=429, detail="Too many requests")
    return dependency


# live dashboards connected over /ws
_WS_CONNECTIONS: dict = {}


def _prepare_message(e: dict):
    try:
        return json.dumps(e)
    except (TypeError, ValueError):
        return None


async def _send_to_websocket(ws: WebSocket, msg, ev) -> bool:
    """Send one event to a socket. Return False if the socket is dead."""
    try:
        if msg is not None:
            await ws.send_text(msg)
        else:
            await ws.send_json(jsonable_encoder(ev))
        return True
    except Exception as send_exc:
        logger.debug("ws_send_error", extra={"error": str(send_exc)})
        return False


async def broadcast_event(event: dict):
    """Push an event to every connected dashboard, dropping sockets that fail."""
    logger.debug("broadcast_event", extra={"event": event.get('type'), "ws_count": len(_WS_CONNECTIONS)})
    json_message = _prepare_message(event)
    dead = []
    for ws in list(_WS_CONNECTIONS):
        if not await _send_to_websocket(ws, json_message, event):
            dead.append(ws)
    for d in dead:
        _WS_CONNECTIONS.pop(d, None)


setup_logging(logging.INFO)
logger = get_logger("logo_hunt")
app = FastAPI(title="Logo Hunt")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        token = request_id_ctx.set(rid)
        start = time.time()
        client = request.client.host if request.client else "-"
        response = None
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = rid
            return response
        except Exception:
            logger.exception(
                "request_error",
                extra={"path": str(request.url), "method": request.method},
            )
            raise
        finally:
            duration_ms = int((time.time() - start) * 1000)
            status = getattr(response, "status_code", 500)
            logger.info(
                "request",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": status,
                    "duration_ms": duration_ms,
                    "client": client,
                },
            )
            request_id_ctx.reset(token)


app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Accept", "Content-Type", "X-Requested-With", "X-Request-ID"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = jsonable_encoder(exc.errors())
    logger.warning("validation_error", extra={"method": request.method, "path": request.url.path, "errors": errors})
    return JSONResponse(
        status_code=422,
        content={
            "detail": errors,
            "message": "Input validation failed"
        }
    )


@app.on_event("startup")
def on_startup():
    from .migrations import run_migrations

    if crud.engine is None:
        url = settings.DATABASE_URL
        crud.engine = create_engine(url, **settings.engine_kwargs(url))
    SQLModel.metadata.create_all(crud.engine)
    try:
        run_migrations(crud.engine)
    except Exception as e:
        logger.warning("migrations_failed", extra={"error": str(e)})


def _validate_id_param(value: str, what: str) -> str:
    v = (value or "").strip()
    if not _ID_RE.match(v):
        raise HTTPException(status_code=400, detail=f"Invalid {what}")
    return v


@app.get("/health", include_in_schema=False)
def health():
    return JSONResponse({"status": "ok"})


@app.get("/api/cache/stats", include_in_schema=False)
def cache_stats():
    return {"cache_stats": get_cache().get_stats(), "status": "ok"}


@app.get("/api/config")
def get_config():
    return {
        "gridSize": settings.grid_size(),
        "allowedGridSizes": list(settings.ALLOWED_GRID_SIZES),
        "companies": settings.companies(),
        "baseUrl": settings.PUBLIC_BASE_URL,
    }


# ============ QR CODES ============

@app.get("/api/qr/check/{qr_id}")
def qr_check(qr_id: str, session: Session = Depends(get_session)):
    qr_id = _validate_id_param(qr_id, "QR code")
    return {"used": crud.is_qr_used(session, qr_id)}


@app.post("/api/qr/use/{qr_id}")
def qr_use(
    qr_id: str,
    session: Session = Depends(get_session),
    _: None = Depends(rate_limit_dependency(max_requests=60, window_seconds=60)),
):
    qr_id = _validate_id_param(qr_id, "QR code")
    return {"success": crud.mark_qr_used(session, qr_id)}


@app.get("/api/qr/used")
def qr_used(session: Session = Depends(get_session)) -> List[str]:
    return crud.list_used_qr(session)


@app.delete("/api/qr/reset")
def qr_reset(session: Session = Depends(get_session)):
    crud.reset_used_qr(session)
    return {"success": True}


@app.get("/api/qr/codes")
def qr_catalogue():
    return [c.to_dict(settings.PUBLIC_BASE_URL) for c in qr_codes.generate_fixed_codes()]


@app.get("/api/qr/info/{qr_id}")
def qr_info(qr_id: str, session: Session = Depends(get_session)):
    code = qr_codes.get_code(qr_id)
    if code is None:
        raise HTTPException(status_code=404, detail="Unknown QR code")
    info = code.to_dict(settings.PUBLIC_BASE_URL)
    info["used"] = crud.is_qr_used(session, code.id)
    if code.type == qr_codes.MEME:
        meme = qr_codes.meme_for_code(code.id)
        info["meme"] = {"emoji": meme.emoji, "text": meme.text, "subtext": meme.subtext}
    return info


# ============ GAME STATE ============

class RevealRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    piece_index: int = Field(..., alias="pieceIndex")
    grid_size: Optional[int] = Field(None, alias="gridSize")
    qr_id: Optional[str] = Field(None, alias="qrId", min_length=1, max_length=64)

    @field_validator('grid_size')
    @classmethod
    def validate_grid_size(cls, v):
        if v is not None and v not in settings.ALLOWED_GRID_SIZES:
            raise ValueError(f'gridSize must be one of {settings.ALLOWED_GRID_SIZES}')
        return v


@app.delete("/api/game/reset")
def game_reset(session: Session = Depends(get_session)):
    crud.reset_game_states(session)
    return {"success": True}


@app.get("/api/game/{company_id}")
def game_state(company_id: str, session: Session = Depends(get_session)):
    company_id = _validate_id_param(company_id, "company id")
    return crud.get_game_state(session, company_id).to_dict()


@app.post("/api/game/{company_id}/reveal")
def reveal(
    company_id: str,
    body: RevealRequest,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
    _: None = Depends(rate_limit_dependency(max_requests=60, window_seconds=60)),
):
    company_id = _validate_id_param(company_id, "company id")
    if not crud.get_session_config(session).game_started:
        raise HTTPException(status_code=409, detail="Game not started")
    if body.qr_id is not None and crud.is_qr_used(session, body.qr_id):
        raise HTTPException(status_code=409, detail=crud.QR_ALREADY_USED)

    result = crud.reveal_piece(
        session, company_id, body.piece_index, body.grid_size or settings.grid_size(), qr_id=body.qr_id,
    )
    if result.message == crud.QR_ALREADY_USED:
        raise HTTPException(status_code=409, detail=crud.QR_ALREADY_USED)
    if result.success:
        background_tasks.add_task(broadcast_event, {
            'type': 'reveal',
            'companyId': company_id,
            'pieceIndex': result.new_piece_index,
            'revealedPieces': result.revealed_pieces,
            'isCompleted': result.is_completed,
        })
    return result.to_dict()


# ============ LEADERBOARD ============

class CompletionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    company_id: str = Field(..., alias="companyId", min_length=1, max_length=64)
    company_name: str = Field("", alias="companyName", max_length=128)
    completed_at: Optional[str] = Field(None, alias="completedAt", max_length=64)

    @field_validator('company_id')
    @classmethod
    def validate_company_id(cls, v):
        v = v.strip()
        if not _ID_RE.match(v):
            raise ValueError('companyId can only contain letters, numbers, underscore, and hyphen')
        return v


@app.get("/api/leaderboard")
def leaderboard(session: Session = Depends(get_session)):
    leaders = get_cached_leaderboard()
    if leaders is None:
        generation = leaderboard_generation()
        leaders = crud.get_leaderboard(session)
        cache_leaderboard(leaders, generation=generation)
    return leaders


@app.post("/api/leaderboard")
def add_to_leaderboard(
    body: CompletionRequest,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
    _: None = Depends(rate_limit_dependency(max_requests=20, window_seconds=60)),
):
    result = crud.record_completion(session, body.company_id, body.company_name, body.completed_at)
    if result.success:
        background_tasks.add_task(broadcast_event, {
            'type': 'completion',
            'companyId': body.company_id,
            'companyName': body.company_name,
            'completionTime': result.completion_time,
        })
    return result.to_dict()


@app.delete("/api/leaderboard/reset")
def leaderboard_reset(session: Session = Depends(get_session)):
    crud.reset_leaderboard(session)
    return {"success": True}


# ============ ADMIN / STATS ============

@app.delete("/api/reset-all")
def reset_all(background_tasks: BackgroundTasks, session: Session = Depends(get_session)):
    crud.reset_all(session)
    background_tasks.add_task(broadcast_event, {'type': 'reset'})
    return {"success": True, "message": "All data reset"}


@app.get("/api/stats")
def stats(session: Session = Depends(get_session)):
    return crud.get_stats(session)


# ============ GAME STATUS (Start/Stop) ============

@app.get("/api/game-status")
def game_status(session: Session = Depends(get_session)):
    return {"started": crud.get_session_config(session).game_started}


@app.post("/api/game-status/start")
def game_start(background_tasks: BackgroundTasks, session: Session = Depends(get_session)):
    cfg = crud.start_game(session)
    background_tasks.add_task(broadcast_event, {'type': 'session', **cfg.to_dict()})
    return {"success": True, "started": cfg.game_started}


@app.post("/api/game-status/stop")
def game_stop(background_tasks: BackgroundTasks, session: Session = Depends(get_session)):
    cfg = crud.stop_game(session)
    background_tasks.add_task(broadcast_event, {'type': 'session', **cfg.to_dict()})
    return {"success": True, "started": cfg.game_started}


@app.post("/api/game-status/reset")
def game_session_reset(background_tasks: BackgroundTasks, session: Session = Depends(get_session)):
    crud.reset_game(session)
    started = crud.get_session_config(session).game_started
    background_tasks.add_task(broadcast_event, {'type': 'reset'})
    return {"success": True, "started": started, "message": "Game reset - all data cleared"}


# ============ ANSWER HISTORY ============

class AnswerRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    qr_id: Optional[str] = Field(None, alias="qrId", max_length=64)
    question: Optional[str] = Field(None, max_length=1000)
    correct_answer: Optional[str] = Field(None, alias="correctAnswer", max_length=500)
    company_id: Optional[str] = Field(None, alias="companyId", max_length=64)
    company_name: Optional[str] = Field(None, alias="companyName", max_length=128)
    piece_index: Optional[int] = Field(None, alias="pieceIndex", ge=0)

    @field_validator('correct_answer', mode='before')
    @classmethod
    def stringify_answer(cls, v: Union[str, int, None]):
        # the client may send the answer's index instead of its text
        return str(v) if isinstance(v, int) else v


@app.post("/api/answer-history")
def add_answer_history(body: AnswerRecord, session: Session = Depends(get_session)):
    crud.add_answer(
        session,
        qr_id=body.qr_id,
        question=body.question,
        correct_answer=body.correct_answer,
        company_id=body.company_id,
        company_name=body.company_name,
        piece_index=body.piece_index,
    )
    return {"success": True}


@app.get("/api/answer-history")
def answer_history(limit: int = 50, session: Session = Depends(get_session)):
    if limit < 1 or limit > 200:
        raise HTTPException(status_code=400, detail="Limit must be between 1 and 200")
    return crud.get_answer_history(session, limit=limit)


@app.get("/api/live-dashboard")
def live_dashboard(session: Session = Depends(get_session)):
    return crud.get_live_dashboard(session)


@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    await ws.accept()
    _WS_CONNECTIONS[ws] = {'connected_at': time.time()}
    try:
        while True:
            msg = await ws.receive_text()
            if msg == "ping":
                await ws.send_text("pong")
    except WebSocketDisconnect:
        pass
    finally:
        _WS_CONNECTIONS.pop(ws, None)
