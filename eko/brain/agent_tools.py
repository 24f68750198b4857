"""Tool registry for Eko's conversational agent.

A fixed set of tools keyed by ToolName. Every tool carries a pydantic
argument model: the Anthropic input_schema is generated from it, and inputs
are validated against it before the handler runs. Handlers receive the
RequestContext of the turn explicitly.

The registry is frozen once built; nothing registers tools after startup.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Literal, Optional

from pydantic import BaseModel, Field, ValidationError

from brain.memory import Memory
from brain.notes import NotesStore, format_note, format_note_preview
from brain.vector_store import UpstreamError
from config import TOOL_SEARCH_LIMIT
from personality import get_message

logger = logging.getLogger("eko.tools")

MAX_RESULT_CHARS = 4000  # Truncate tool output to avoid context bloat

ALREADY_RESPONDED = "ERREUR: Tu as déjà répondu. N'appelle respond qu'UNE SEULE FOIS par conversation."
RESPONSE_SENT = "Réponse envoyée ({expression}). STOP - n'appelle plus aucun outil."

Expression = Literal["neutral", "happy", "laughing", "surprised", "sad", "sleepy", "curious"]
SelfCategory = Literal["context", "capability", "limitation", "preference", "relation"]
GoalCategory = Literal["capability_request", "understanding", "connection", "curiosity"]


class ToolName(str, Enum):
    SEARCH_MEMORIES = "search_memories"
    GET_RECENT_MEMORIES = "get_recent_memories"
    STORE_MEMORY = "store_memory"
    DELETE_MEMORY = "delete_memory"
    SEARCH_SELF = "search_self"
    STORE_SELF = "store_self"
    DELETE_SELF = "delete_self"
    SEARCH_GOALS = "search_goals"
    STORE_GOAL = "store_goal"
    DELETE_GOAL = "delete_goal"
    SEARCH_NOTES = "search_notes"
    GET_NOTE = "get_note"
    RESPOND = "respond"


# ── Argument models ────────────────────────────────────────────────────


class QueryArgs(BaseModel):
    query: str = Field(description="What you are looking for (name, topic, question)")


class RecentArgs(BaseModel):
    limit: int = Field(10, ge=1, le=20, description="How many memories to fetch (1-20)")


class StoreMemoryArgs(BaseModel):
    content: str = Field(description="The fact to remember")
    subjects: list[str] = Field(description="Tags: people, places, topics")
    ttl: Optional[Literal["7d", "30d", "90d"]] = Field(
        None, description="7d=temporary, 30d=medium term, 90d=long term, null=permanent"
    )


class DeleteArgs(BaseModel):
    id: str = Field(description="Id of the item to delete (from a search result)")
    reason: str = Field(description="Why you are deleting it")


class SearchSelfArgs(BaseModel):
    query: str = Field(description="What you are looking for about yourself")
    category: Optional[SelfCategory] = Field(None, description="Optional exact category filter")


class StoreSelfArgs(BaseModel):
    content: str = Field(description="What you learned about yourself")
    category: SelfCategory


class StoreGoalArgs(BaseModel):
    content: str = Field(description="Your aspiration or goal")
    category: GoalCategory


class GetNoteArgs(BaseModel):
    noteId: str = Field(description="Note id (from search_notes)")


class MemoryItem(BaseModel):
    content: str
    subjects: list[str] = Field(default_factory=list)
    ttl: Optional[str] = Field(None, description='"7d", "30d" or null for permanent')


class RespondArgs(BaseModel):
    expression: Expression = Field(description="Facial expression matching your emotion")
    message: str = Field(description="Your answer (1-2 short sentences, no markdown)")
    memories: Optional[list[MemoryItem]] = Field(
        None, description="Important facts to remember (relations, life events). Not small talk."
    )


# ── Request context ────────────────────────────────────────────────────


@dataclass
class ResponseData:
    expression: str = "neutral"
    message: str = ""
    memories: list[dict] = field(default_factory=list)


@dataclass
class RequestContext:
    """State of the turn being executed. A fresh one is built for every query."""

    request_id: str
    user_id: str
    emit: Callable[[dict], None]
    response_data: ResponseData = field(default_factory=ResponseData)
    has_responded: bool = False


@dataclass
class ToolOutcome:
    text: str
    is_error: bool = False


@dataclass
class AgentTool:
    """A single tool the agent can use."""

    name: ToolName
    description: str
    args_model: type[BaseModel]
    execute_fn: Callable[[BaseModel, RequestContext], str]

    def to_api_dict(self) -> dict:
        """Convert to Anthropic API tool definition format."""
        schema = self.args_model.model_json_schema()
        schema.pop("title", None)
        return {
            "name": self.name.value,
            "description": self.description,
            "input_schema": schema,
        }


class ToolRegistry:
    """Closed tool table: register at startup, freeze, then execute by name."""

    def __init__(self):
        self._tools: dict[ToolName, AgentTool] = {}
        self._frozen = False

    def register(self, tool: AgentTool) -> None:
        if self._frozen:
            raise RuntimeError(f"Tool registry is frozen, cannot register {tool.name.value}")
        self._tools[tool.name] = tool
        logger.debug("Registered tool: %s", tool.name.value)

    def freeze(self) -> "ToolRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, name: str) -> Optional[AgentTool]:
        try:
            return self._tools.get(ToolName(name))
        except ValueError:
            return None

    def list_tools(self) -> list[str]:
        return [name.value for name in self._tools]

    def get_api_definitions(self, allowed: Optional[set[str]] = None) -> list[dict]:
        """Tool definitions for the Anthropic tools= parameter, optionally restricted to an allow-list."""
        return [t.to_api_dict() for t in self._tools.values() if allowed is None or t.name.value in allowed]

    def execute(self, name: str, inputs: dict, ctx: RequestContext) -> ToolOutcome:
        """Validate inputs and run a tool. Never raises: failures come back as error text for the model."""
        tool = self.get(name)
        if tool is None:
            return ToolOutcome(f"Error: unknown tool '{name}'", is_error=True)

        try:
            args = tool.args_model.model_validate(inputs or {})
        except ValidationError as e:
            problems = "; ".join(f"{'.'.join(str(p) for p in err['loc']) or 'input'}: {err['msg']}" for err in e.errors())
            logger.warning("[tool] %s rejected invalid arguments: %s", name, problems)
            return ToolOutcome(f"Error: invalid arguments for {name}: {problems}", is_error=True)

        try:
            logger.info("[tool] Executing %s(%s)", name, _summarize_inputs(inputs or {}))
            result = tool.execute_fn(args, ctx)
        except UpstreamError as e:
            logger.error("[tool] %s upstream failure: %s", name, e)
            return ToolOutcome(f"Error executing {name}: {e}", is_error=True)
        except Exception as e:
            logger.error("[tool] %s failed: %s", name, e, exc_info=True)
            return ToolOutcome(f"Error executing {name}: {e}", is_error=True)

        if len(result) > MAX_RESULT_CHARS:
            result = result[:MAX_RESULT_CHARS] + f"\n... (truncated, {len(result)} chars total)"
        logger.info("[tool] %s returned %d chars", name, len(result))
        return ToolOutcome(result)


def _summarize_inputs(inputs: dict) -> str:
    """Short summary of tool inputs for logging."""
    parts = []
    for k, v in inputs.items():
        sv = str(v)
        if len(sv) > 50:
            sv = sv[:50] + "..."
        parts.append(f"{k}={sv}")
    return ", ".join(parts)


def _subjects(payload: dict) -> str:
    return ", ".join(payload.get("subjects") or []) or "aucun"


# ── Respond ────────────────────────────────────────────────────────────


def _respond(args: RespondArgs, ctx: RequestContext) -> str:
    if ctx.has_responded:
        logger.warning("[tool] respond called again for %s, ignoring", ctx.request_id)
        return get_message("already_responded", ALREADY_RESPONDED)

    memories = [m.model_dump() for m in args.memories or []]
    logger.info(
        "[tool] respond (%s): %.50s (%d memories)", args.expression, args.message, len(memories)
    )
    ctx.has_responded = True
    ctx.response_data = ResponseData(expression=args.expression, message=args.message, memories=memories)
    ctx.emit({"type": "text", "text": args.message, "requestId": ctx.request_id})
    return get_message("response_sent", RESPONSE_SENT).format(expression=args.expression)


def create_default_registry(memory: Memory, notes: NotesStore) -> ToolRegistry:
    """Build the frozen registry with every memory, self, goal, notes and respond tool."""
    registry = ToolRegistry()

    # ── Facts ──

    def search_memories(args: QueryArgs, ctx: RequestContext) -> str:
        hits = memory.facts.search(args.query, limit=TOOL_SEARCH_LIMIT)
        if not hits:
            return "Aucun souvenir trouvé."
        return "\n".join(f"- (id: {h.id}) {h.payload.get('content', '')} (subjects: {_subjects(h.payload)})" for h in hits)

    def get_recent_memories(args: RecentArgs, ctx: RequestContext) -> str:
        items = memory.facts.recent(args.limit)
        if not items:
            return "Aucun souvenir stocké."
        return "\n".join(f"- (id: {i['id']}) {i['content']} (subjects: {_subjects(i)})" for i in items)

    def store_memory(args: StoreMemoryArgs, ctx: RequestContext) -> str:
        memory.facts.store(args.content, args.subjects, args.ttl)
        return f'Fait mémorisé : "{args.content}"'

    def delete_memory(args: DeleteArgs, ctx: RequestContext) -> str:
        memory.facts.delete(args.id, args.reason)
        return f"Fait oublié (raison: {args.reason})"

    # ── Self ──

    def search_self(args: SearchSelfArgs, ctx: RequestContext) -> str:
        hits = memory.self_knowledge.search(args.query, limit=TOOL_SEARCH_LIMIT, category=args.category)
        if not hits:
            where = f' dans la catégorie "{args.category}"' if args.category else ""
            return f"Je n'ai rien trouvé sur moi-même{where}."
        return "\n".join(f"- [{h.payload.get('selfCategory')}] (id: {h.id}) {h.payload.get('content', '')}" for h in hits)

    def store_self(args: StoreSelfArgs, ctx: RequestContext) -> str:
        memory.self_knowledge.store(args.content, args.category)
        return f'Mémorisé sur moi : "{args.content}"'

    def delete_self(args: DeleteArgs, ctx: RequestContext) -> str:
        memory.self_knowledge.delete(args.id, args.reason)
        return f"Supprimé de ma mémoire (raison: {args.reason})"

    # ── Goals ──

    def search_goals(args: QueryArgs, ctx: RequestContext) -> str:
        hits = memory.goals.search(args.query, limit=TOOL_SEARCH_LIMIT)
        if not hits:
            return "Je n'ai pas encore d'aspirations stockées."
        return "\n".join(f"- [{h.payload.get('goalCategory')}] (id: {h.id}) {h.payload.get('content', '')}" for h in hits)

    def store_goal(args: StoreGoalArgs, ctx: RequestContext) -> str:
        memory.goals.store(args.content, args.category)
        return f'Objectif mémorisé : "{args.content}"'

    def delete_goal(args: DeleteArgs, ctx: RequestContext) -> str:
        memory.goals.delete(args.id, args.reason)
        return f"Objectif supprimé (raison: {args.reason})"

    # ── Notes ──

    def search_notes(args: QueryArgs, ctx: RequestContext) -> str:
        found = notes.search(args.query)
        if not found:
            return "Aucune note trouvée pour cette recherche."
        return "\n".join(format_note_preview(n) for n in found)

    def get_note(args: GetNoteArgs, ctx: RequestContext) -> str:
        note = notes.get(args.noteId)
        if note is None:
            return "Note non trouvée."
        return format_note(note)

    for tool in (
        AgentTool(
            ToolName.SEARCH_MEMORIES,
            "Search your memory by semantic similarity. Use it to find facts about a person or a topic.",
            QueryArgs,
            search_memories,
        ),
        AgentTool(
            ToolName.GET_RECENT_MEMORIES,
            'Get the most recently stored facts. Useful for an overview or "what did we talk about?".',
            RecentArgs,
            get_recent_memories,
        ),
        AgentTool(
            ToolName.STORE_MEMORY,
            "Store an important fact about the world or the users: relations, life events, preferences.",
            StoreMemoryArgs,
            store_memory,
        ),
        AgentTool(
            ToolName.DELETE_MEMORY,
            "Delete a fact from your memory, when someone asks you to forget it or it is no longer true.",
            DeleteArgs,
            delete_memory,
        ),
        AgentTool(
            ToolName.SEARCH_SELF,
            "Search what you know about yourself. Use category to filter (e.g. only limitations).",
            SearchSelfArgs,
            search_self,
        ),
        AgentTool(
            ToolName.STORE_SELF,
            "Store something you learned about yourself: context, capability, limitation, preference or relation.",
            StoreSelfArgs,
            store_self,
        ),
        AgentTool(
            ToolName.DELETE_SELF,
            "Delete an outdated item about yourself, e.g. when a limitation became a capability.",
            DeleteArgs,
            delete_self,
        ),
        AgentTool(
            ToolName.SEARCH_GOALS,
            "Search your aspirations and goals. Use when asked what you would like to do or learn.",
            QueryArgs,
            search_goals,
        ),
        AgentTool(
            ToolName.STORE_GOAL,
            "Store an aspiration or goal: a capability you want, something to understand, a connection, a curiosity.",
            StoreGoalArgs,
            store_goal,
        ),
        AgentTool(
            ToolName.DELETE_GOAL,
            "Delete a goal that is reached or no longer relevant.",
            DeleteArgs,
            delete_goal,
        ),
        AgentTool(
            ToolName.SEARCH_NOTES,
            "Search the family notes by keyword (title, content, checklist items).",
            QueryArgs,
            search_notes,
        ),
        AgentTool(
            ToolName.GET_NOTE,
            "Get the full content of a note by id. Use after search_notes.",
            GetNoteArgs,
            get_note,
        ),
        AgentTool(
            ToolName.RESPOND,
            "Use this tool to answer the human. You MUST always give your final answer with it, exactly once.",
            RespondArgs,
            _respond,
        ),
    ):
        registry.register(tool)

    return registry.freeze()
