"""FastAPI server exposing CityScout onboarding, profile and chat endpoints."""
import json
import logging
import os

from dotenv import load_dotenv

load_dotenv()
from typing import Any, AsyncGenerator

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sse_starlette.sse import EventSourceResponse
from sqlalchemy.ext.asyncio import create_async_engine

from agents import Runner
from openai.types.responses import ResponseTextDeltaEvent

from city_scout.analyzers.chat_assistant import ChatContext, city_scout_agent
from city_scout.analyzers.search import advanced_search
from city_scout.api.chat_history import open_chat_history
from city_scout.errors import (
    ActivityExportError,
    PreferenceSelectionError,
    ProfileNotFoundError,
    SynthesisError,
)
from city_scout.places.resolver import PlaceTypeCache, PlaceTypeResolver
from city_scout.preferences import profile_stage, required_route
from city_scout.service import CityScout, redirect
from city_scout.storage.blobs import make_blob_store
from city_scout.storage.records import make_record_store

_log = logging.getLogger(__name__)

app = FastAPI(title="CityScout API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["*"],
)

# ── Service wiring ───────────────────────────────────────────────────────────
# One service per process so the place-type cache and per-user locks are shared.

DB_PATH = os.getenv("DB_PATH", "city_scout.db")
_engine = create_async_engine(f"sqlite+aiosqlite:///{DB_PATH}")

_service: CityScout | None = None


def get_service() -> CityScout:
    global _service
    if _service is None:
        _service = CityScout(
            make_record_store(),
            make_blob_store(),
            PlaceTypeResolver(PlaceTypeCache()),
        )
    return _service


@app.on_event("startup")
async def _log_backends() -> None:
    storage = os.getenv("STORAGE_BACKEND", "sqlite").lower()
    history = os.getenv("CHAT_HISTORY_BACKEND", "sqlite").lower()
    _log.info("storage backend=%s  chat history backend=%s  db=%s", storage, history, DB_PATH)


@app.exception_handler(ProfileNotFoundError)
async def _profile_not_found(request: Request, exc: ProfileNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ActivityExportError)
async def _bad_export(request: Request, exc: ActivityExportError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc), "errors": exc.errors})


@app.exception_handler(PreferenceSelectionError)
async def _bad_selection(request: Request, exc: PreferenceSelectionError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


def _gated(result: dict[str, Any]) -> dict[str, Any] | JSONResponse:
    if "redirect" in result:
        return JSONResponse(status_code=409, content=result)
    return result


def _items_to_display_messages(items: list) -> list[dict]:
    """Convert stored run items to frontend-displayable chat messages."""
    messages = []
    pending_tool_calls: list[dict] = []

    for item in items:
        if hasattr(item, "model_dump"):
            item = item.model_dump()

        item_type = item.get("type", "")

        # typed {"type": "message"} items and bare {"role": ..., "content": ...} inputs
        if item_type == "message" or (not item_type and "role" in item):
            content = item.get("content", "")
            if isinstance(content, str):
                text = content
            elif isinstance(content, list):
                text = "".join(
                    part.get("text", "")
                    for part in content
                    if part.get("type") in ("text", "input_text", "output_text")
                )
            else:
                text = ""
            if not text:
                continue

            role = item.get("role", "")
            if role == "user":
                messages.append({"role": "user", "content": text, "toolCalls": []})
            elif role in ("assistant", "agent"):
                messages.append({"role": "agent", "content": text, "toolCalls": pending_tool_calls})
            pending_tool_calls = []

        elif item_type in ("function_call", "web_search_call"):
            pending_tool_calls.append({"tool": item.get("name") or item_type, "status": "done"})

    return messages


# ── Profile ──────────────────────────────────────────────────────────────────

class CreateProfileRequest(BaseModel):
    full_name: str | None = None
    avatar_url: str | None = None
    gender: str | None = None


@app.get("/api/health")
def health():
    """Check that required env vars are set."""
    if not os.getenv("OPENAI_API_KEY"):
        raise HTTPException(status_code=503, detail="OPENAI_API_KEY not set")
    return {"status": "ok"}


@app.post("/api/users/{user_id}/profile")
async def create_profile(
    user_id: str, req: CreateProfileRequest, service: CityScout = Depends(get_service)
):
    """Create the profile on first sign-in. Idempotent."""
    profile = await service.ensure_profile(user_id, **req.model_dump(exclude_none=True))
    return profile.model_dump()


@app.get("/api/users/{user_id}/profile")
async def get_profile(user_id: str, service: CityScout = Depends(get_service)):
    """Confirmed tiles and report, or 409 with where to go first."""
    return _gated(await service.profile_view(user_id))


@app.post("/api/users/{user_id}/reset")
async def reset_profile(user_id: str, service: CityScout = Depends(get_service)):
    profile = await service.reset(user_id)
    return profile.model_dump()


@app.delete("/api/users/{user_id}")
async def delete_user(user_id: str, service: CityScout = Depends(get_service)):
    """Delete the user's files, records, profile and chat history."""
    await service.delete_user(user_id)
    await open_chat_history(user_id, engine=_engine).clear()
    return {"deleted": user_id}


# ── Onboarding ───────────────────────────────────────────────────────────────

class ActivityUpload(BaseModel):
    activity_data: Any


class ConfirmRequest(BaseModel):
    selections: dict[str, list[str]]


@app.post("/api/users/{user_id}/activity")
async def upload_activity(
    user_id: str, req: ActivityUpload, service: CityScout = Depends(get_service)
):
    """Aggregate a My Activity export into the top-20 tables."""
    return await service.aggregate(user_id, req.activity_data)


@app.post("/api/users/{user_id}/insights")
async def generate_insights(user_id: str, service: CityScout = Depends(get_service)):
    """Stream SSE events: progress, then the report and tiles or an error."""
    await service.get_profile(user_id)

    async def _generate() -> AsyncGenerator[dict, None]:
        yield {
            "event": "progress",
            "data": json.dumps({"stage": "analyzing", "message": "Generating personality insights…"}),
        }
        try:
            result = await service.synthesize(user_id)
        except SynthesisError as exc:
            yield {"event": "error", "data": json.dumps({"error": str(exc)})}
            return
        yield {"event": "result", "data": json.dumps(result, ensure_ascii=False)}

    return EventSourceResponse(_generate())


@app.get("/api/users/{user_id}/preferences")
async def get_preferences(user_id: str, service: CityScout = Depends(get_service)):
    """Review steps with the generated tags, all pre-selected."""
    return _gated(await service.preference_review(user_id))


@app.put("/api/users/{user_id}/preferences")
async def confirm_preferences(
    user_id: str, req: ConfirmRequest, service: CityScout = Depends(get_service)
):
    return _gated(await service.confirm_tiles(user_id, req.selections))


# ── Chat and search ──────────────────────────────────────────────────────────

class ChatRequest(BaseModel):
    message: str
    user_id: str


class SearchRequest(BaseModel):
    query: str


@app.get("/api/users/{user_id}/messages")
async def get_chat_history(user_id: str):
    """Return the full chat history for a user in display format."""
    history = open_chat_history(user_id, engine=_engine)
    return _items_to_display_messages(await history.get_history())


@app.post("/api/chat")
async def chat(req: ChatRequest, service: CityScout = Depends(get_service)):
    """Stream chat responses from the CityScout agent via SSE."""
    profile = await service.get_profile(req.user_id)
    route = required_route(profile)
    if route is not None:
        return JSONResponse(status_code=409, content=redirect(profile_stage(profile), route))

    report, tiles = await service.load_personality(req.user_id)
    ctx = ChatContext(user_id=req.user_id, report=report, tiles=tiles, resolver=service.resolver)
    history = open_chat_history(req.user_id, engine=_engine)

    async def _generate() -> AsyncGenerator[dict, None]:
        try:
            prior = await history.get_history()
            full_input = list(prior) + [{"role": "user", "content": req.message}]

            result = Runner.run_streamed(city_scout_agent, input=full_input, context=ctx)

            async for event in result.stream_events():
                if event.type == "raw_response_event":
                    if isinstance(event.data, ResponseTextDeltaEvent) and event.data.delta:
                        yield {"event": "token", "data": json.dumps({"delta": event.data.delta})}
                elif event.type == "run_item_stream_event":
                    item = event.item
                    if getattr(item, "type", "") == "tool_call_item":
                        raw = getattr(item, "raw_item", None)
                        tool_name = getattr(raw, "name", None) or getattr(raw, "type", "")
                        if tool_name:
                            yield {
                                "event": "tool_call",
                                "data": json.dumps({"tool": tool_name, "status": "running"}),
                            }

            await history.save_messages(result.to_input_list()[len(prior):])
            yield {"event": "done", "data": "{}"}

        except Exception as exc:
            _log.error("chat failed for user %s: %s", req.user_id, exc)
            fix = "Set OPENAI_API_KEY in your .env file" if "OPENAI_API_KEY" in str(exc) else ""
            yield {"event": "error", "data": json.dumps({"error": str(exc), "fix": fix})}

    return EventSourceResponse(_generate())


@app.post("/api/search")
async def search(req: SearchRequest):
    """One-shot web-backed answer for a place or travel question."""
    try:
        answer = await advanced_search(req.query)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"result": answer}


@app.get("/api/mapbox-token")
def mapbox_token():
    token = os.getenv("MAPBOX_TOKEN")
    if not token:
        raise HTTPException(status_code=503, detail="MAPBOX_TOKEN not set")
    return {"token": token}
