from datetime import datetime, timezone
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging

# Ensure .env is loaded before importing modules that initialize API clients
from .settings import has_all_keys, ALLOWED_ORIGINS, PORT
from .models import StartStoryRequest, NextStepRequest, TurnResult
from .kv_storage import SessionStore, StorageError, VersionConflict, build_session_store
from .llm import ChatTextGenerator
from .image_client import StorybookImageGenerator
from .orchestrator import StoryOrchestrator, SessionNotFound, StoryComplete

logger = logging.getLogger(__name__)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


def _body_fields(model) -> list:
    return [field.alias or name for name, field in model.model_fields.items()]


BODY_FIELDS = {
    "/start-story": _body_fields(StartStoryRequest),
    "/generate-next": _body_fields(NextStepRequest),
}


def _invalid_fields(path: str, errors: list) -> list:
    fields = []
    for err in errors:
        loc = [str(part) for part in err.get("loc", ()) if part != "body"]
        if loc and loc[0] not in fields:
            fields.append(loc[0])
    # The body as a whole was missing or not an object
    return fields or BODY_FIELDS.get(path, [])


def _turn_body(result: TurnResult) -> dict:
    body = {
        "success": True,
        "story": result.story,
        "imageUrl": result.image_url,
        "stepCount": result.step_count,
        "isFinal": result.is_final,
    }
    if not result.is_final:
        body["question"] = result.question
        body["choices"] = result.choices
    return body


def create_app(store: SessionStore = None, text_generator=None, image_generator=None,
               target_steps: int = None) -> FastAPI:
    if store is None:
        store = build_session_store()
    orchestrator = StoryOrchestrator(
        store=store,
        text_generator=text_generator or ChatTextGenerator(),
        image_generator=image_generator or StorybookImageGenerator(),
        target_steps=target_steps,
    )

    app = FastAPI(title="Storybook Backend")
    app.state.orchestrator = orchestrator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS or ["*"],
        allow_credentials=True,
        allow_methods=["POST", "GET", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return _error(exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        logger.warning(f"Invalid request body for {request.url.path}: {exc.errors()}")
        fields = _invalid_fields(request.url.path, exc.errors())
        if not fields:
            return _error(400, "Invalid request body: expected a JSON object of strings")
        return _error(400, f"Missing or invalid fields: {', '.join(fields)}")

    @app.get("/health")
    def health():
        keys_ok = has_all_keys()
        logger.info(f"Health check: API keys present = {keys_ok}")
        return {
            "ok": True,
            "status": "ok",
            "has_keys": keys_ok,
            "session_store": orchestrator.store.name,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.post("/start-story")
    async def start_story(req: StartStoryRequest):
        missing = req.missing_fields()
        if missing:
            logger.warning(f"Missing required fields for start-story: {missing}")
            raise HTTPException(400, f"Missing required fields: {', '.join(missing)}")

        logger.info(f"Received start-story request: style={req.style!r}, character={req.character!r}")
        try:
            result = await orchestrator.start(req)
        except StorageError as e:
            logger.error(f"Session storage unavailable in /start-story: {e}")
            return _error(500, "Failed to start story: session storage is unavailable.")
        except Exception:
            logger.exception("Error in /start-story")
            return _error(500, "Failed to start story due to an internal server error.")

        return {
            "success": True,
            "sessionId": result.session_id,
            "story": result.story,
            "imageUrl": result.image_url,
            "question": result.question,
            "choices": result.choices,
        }

    @app.post("/generate-next")
    async def generate_next(req: NextStepRequest):
        missing = req.missing_fields()
        if missing:
            logger.warning(f"/generate-next missing fields: {missing}")
            raise HTTPException(400, f"Missing required fields: {', '.join(missing)}")

        session_id = req.session_id.strip()
        logger.info(f"Received /generate-next request with sessionId: {session_id}, userChoice: {req.user_choice}")
        try:
            result = await orchestrator.advance(session_id, req.user_choice.strip())
        except SessionNotFound:
            logger.warning(f"Session {session_id} not found or expired")
            return _error(404, "Story session not found or has expired.")
        except StoryComplete:
            logger.warning(f"Session {session_id} is already complete")
            return _error(409, "This story is already finished. Start a new story to keep reading.")
        except VersionConflict as e:
            logger.warning(f"Concurrent update rejected for session {session_id}: {e}")
            return _error(409, "This story was continued by another request. Reload the story and try again.")
        except StorageError as e:
            logger.error(f"Session storage unavailable in /generate-next for session {session_id}: {e}")
            return _error(500, "Failed to load the story session: session storage is unavailable.")
        except Exception:
            logger.exception(f"Error in /generate-next for session {session_id}")
            return _error(500, "Failed to generate next part of the story due to an internal server error.")

        return _turn_body(result)

    return app


app = create_app()


def run() -> None:
    import uvicorn
    uvicorn.run("storybook.app:app", host="0.0.0.0", port=PORT)
