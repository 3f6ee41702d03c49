import uuid, asyncio, logging
from typing import Optional
from langgraph.graph import StateGraph, END
from pydantic import BaseModel, ValidationError

from . import settings
from .models import StartStoryRequest, StorySegment, StorySession, StoryPayload, TextRequest, TurnResult
from .kv_storage import SessionStore, StorageError
from .prompts import build_text_request
from .parser import parse_story_response, call_failure_payload
from .image_client import illustrate

logger = logging.getLogger(__name__)


class SessionNotFound(LookupError):
    """No live session for the given id (never created, or expired)."""


class StoryComplete(RuntimeError):
    """The session already reached its final step."""


class TurnState(BaseModel):
    session: StorySession
    target_steps: int
    user_choice: Optional[str] = None
    request: Optional[TextRequest] = None
    payload: Optional[StoryPayload] = None
    image_url: Optional[str] = None


class StoryOrchestrator:
    """Runs story turns: text, then illustration, then commit to the session store.

    A turn never fails because of the generators; they degrade to fallback
    content. It fails only when the session is missing or finished, when the
    store cannot be read, or when another request advanced the same session
    first (``VersionConflict`` from the store).
    """

    def __init__(self, store: SessionStore, text_generator, image_generator,
                 target_steps: int = None, ttl: int = None, context_segments: int = None):
        self.store = store
        self.text_generator = text_generator
        self.image_generator = image_generator
        self.target_steps = target_steps or settings.STORY_TARGET_STEPS
        self.ttl = ttl or settings.SESSION_TTL_SECONDS
        self.context_segments = context_segments if context_segments is not None else settings.STORY_CONTEXT_SEGMENTS
        self.graph = self.build_graph()

    # --- graph nodes ---

    async def node_story_text(self, state: TurnState) -> dict:
        session = state.session
        step = session.step_count
        is_final = step >= state.target_steps
        request = build_text_request(session, step, state.target_steps, state.user_choice, self.context_segments)
        logger.info(f"Generating story text ({request.template}) for session {session.id}, step {step}")
        try:
            raw = await asyncio.to_thread(self.text_generator.complete, request)
        except Exception as e:
            logger.error(f"Text generation failed for session {session.id}, step {step}: {e}")
            return {"request": request, "payload": call_failure_payload(is_final)}
        payload = parse_story_response(raw, is_final)
        if payload.fallback:
            logger.warning(f"Using fallback story text for session {session.id}, step {step}")
        return {"request": request, "payload": payload}

    async def node_illustration(self, state: TurnState) -> dict:
        logger.info(f"Generating illustration for session {state.session.id}, step {state.session.step_count}")
        image_url = await illustrate(state.payload.story, state.session.visual_style_prompt, self.image_generator)
        return {"image_url": image_url}

    async def node_commit(self, state: TurnState) -> dict:
        session = state.session.model_copy(deep=True)
        session.segments.append(StorySegment(text=state.payload.story, image_url=state.image_url))
        session.touch()
        return {"session": session}

    def build_graph(self):
        g = StateGraph(TurnState)
        g.add_node("story_text", self.node_story_text)
        g.add_node("illustration", self.node_illustration)
        g.add_node("commit", self.node_commit)
        g.set_entry_point("story_text")
        g.add_edge("story_text", "illustration")
        g.add_edge("illustration", "commit")
        g.add_edge("commit", END)
        return g.compile()

    # --- turn lifecycle ---

    async def _run_turn(self, session: StorySession, user_choice: Optional[str]) -> TurnState:
        state = TurnState(session=session, target_steps=self.target_steps, user_choice=user_choice)
        final_state = await self.graph.ainvoke(state)
        # LangGraph hands back a dict of channel values
        if isinstance(final_state, TurnState):
            return final_state
        return TurnState.model_validate(dict(final_state))

    async def _save(self, session: StorySession) -> None:
        try:
            await self.store.compare_and_put(session.id, session.to_record(), self.ttl)
            logger.info(f"Session {session.id} saved at step {session.step_count}")
        except StorageError as e:
            # The client still gets this turn; resuming may replay from the last saved step.
            logger.error(f"Failed to save session {session.id} at step {session.step_count}: {e}")

    def _result(self, turn: TurnState) -> TurnResult:
        payload = turn.payload
        final = turn.session.is_terminal(self.target_steps)
        return TurnResult(
            session_id=turn.session.id,
            step_count=turn.session.step_count,
            story=payload.story,
            image_url=turn.image_url,
            question=None if final else payload.question,
            choices=[] if final else list(payload.choices),
            is_final=final,
        )

    async def load(self, session_id: str) -> StorySession:
        record = await self.store.get(session_id)
        if record is None:
            raise SessionNotFound(session_id)
        try:
            return StorySession.model_validate(record)
        except ValidationError as e:
            raise StorageError(f"Stored session {session_id} is not a valid story session: {e}") from e

    async def start(self, req: StartStoryRequest) -> TurnResult:
        session = StorySession(
            id=str(uuid.uuid4()),
            style=req.style.strip(),
            character=req.character.strip(),
            setting=req.setting.strip(),
            theme=req.theme.strip(),
            visual_style_prompt=req.visual_style_prompt.strip(),
        )
        # Nothing to resume from if this write fails, so StorageError propagates.
        stored = await self.store.put(session.id, session.to_record(), self.ttl)
        session.version = stored["version"]
        logger.info(f"Session {session.id} created")

        turn = await self._run_turn(session, None)
        await self._save(turn.session)
        return self._result(turn)

    async def advance(self, session_id: str, user_choice: str) -> TurnResult:
        session = await self.load(session_id)
        if session.is_terminal(self.target_steps):
            raise StoryComplete(session_id)

        session.step_count += 1
        logger.info(f"Continuing story for session {session_id}. Step: {session.step_count}")
        turn = await self._run_turn(session, user_choice)
        await self._save(turn.session)
        return self._result(turn)
