import os

from dotenv import load_dotenv

load_dotenv()

# API
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")

# Models (Anthropic Claude)
AGENT_MODEL = os.getenv("AGENT_MODEL", "claude-sonnet-4-5")  # Conversational agent turns
REFLECTION_MODEL = os.getenv("REFLECTION_MODEL", "claude-sonnet-4-5")  # Single-shot reflection decisions
AGENT_MAX_TURNS = int(os.getenv("AGENT_MAX_TURNS", "10"))  # Max model calls per user query
AGENT_MAX_TOKENS = int(os.getenv("AGENT_MAX_TOKENS", "1024"))  # Max tokens per model response
AGENT_API_MAX_RETRIES = int(os.getenv("AGENT_API_MAX_RETRIES", "2"))  # SDK-level retries for agent turns
AGENT_TEXT_FALLBACK = os.getenv("AGENT_TEXT_FALLBACK", "false").lower() in ("true", "1", "yes")

# Embeddings (OpenAI-compatible endpoint)
EMBEDDING_URL = os.getenv("EMBEDDING_URL", "https://api.openai.com/v1/embeddings")
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")

# Vector store (Qdrant REST)
QDRANT_URL = os.getenv("QDRANT_URL", "http://qdrant:6333")
QDRANT_API_KEY = os.getenv("QDRANT_API_KEY", "")
FACTS_COLLECTION = os.getenv("FACTS_COLLECTION", "facts")
SELF_COLLECTION = os.getenv("SELF_COLLECTION", "self")
GOALS_COLLECTION = os.getenv("GOALS_COLLECTION", "goals")
LIVE_COLLECTION = os.getenv("LIVE_COLLECTION", "live")
DEDUP_THRESHOLD = 0.85  # Cosine score at or above which a new point replaces the old one
HTTP_TIMEOUT = float(os.getenv("HTTP_TIMEOUT", "15"))

# Query context
LIVE_CONTEXT_LIMIT = 10  # Public messages spliced into the system prompt per turn
TOOL_SEARCH_LIMIT = 10  # Results returned by search_* tools
NOTES_SEARCH_LIMIT = 10

# Sessions (worker process)
SESSION_TIMEOUT_SECONDS = int(os.getenv("SESSION_TIMEOUT_SECONDS", "900"))  # 15 min idle expiry
SESSION_SWEEP_INTERVAL = 60  # Seconds between idle sweeps
MAX_TRANSCRIPTS = 200  # Conversation transcripts kept by the agent runtime
MAX_TRANSCRIPT_MESSAGES = 60  # Messages kept per transcript, trimmed at user-turn boundaries

# Supervisor
REQUEST_TIMEOUT_SECONDS = 120.0  # Per-request wall clock cap
WORKER_READY_TIMEOUT = 30.0  # Worker must print "ready" within this
CONTROL_TIMEOUT = 5.0  # ping / reset round trip

# Reflection
REFLECTION_ENABLED = os.getenv("REFLECTION_ENABLED", "true").lower() in ("true", "1", "yes")
REFLECTION_EVERY_HOURS = 3  # Cron: minute 0 of every 3rd hour
REFLECTION_COOLDOWN_MINUTES = int(os.getenv("REFLECTION_COOLDOWN_MINUTES", "30"))
REFLECTION_MAX_PER_DAY = int(os.getenv("REFLECTION_MAX_PER_DAY", "5"))
REFLECTION_GOAL_REPEAT_DAYS = 30  # A posted goal is not surfaced again within this window
REFLECTION_MAX_MESSAGES = 20
REFLECTION_MAX_FACTS = 10
REFLECTION_MAX_SELF = 10
REFLECTION_MAX_GOALS = 50
REFLECTION_MAX_TOKENS = 500
REFLECTION_HISTORY_CACHE = 20
REFLECTION_MAX_ENTRIES = 1000  # Entries kept in the durable log

# Chat backend (rooms/messages live in the chat server)
CHAT_API_URL = os.getenv("CHAT_API_URL", "http://localhost:3001/api/bot")
CHAT_API_TOKEN = os.getenv("CHAT_API_TOKEN", "")
AGENT_USERNAME = os.getenv("AGENT_USERNAME", "eko")

# Storage
DATA_DIR = os.getenv("EKO_DATA_DIR", "./eko_data")
NOTES_FILE = os.path.join(DATA_DIR, "notes.json")
REFLECTION_STATE_FILE = os.path.join(DATA_DIR, "reflections.json")

# Persona (personalities/*.yaml)
PERSONALITY = os.getenv("EKO_PERSONALITY", "eko")

# Operator dashboard
DASHBOARD_HOST = os.getenv("DASHBOARD_HOST", "127.0.0.1")
DASHBOARD_PORT = int(os.getenv("DASHBOARD_PORT", "8420"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

EXPRESSIONS = ("neutral", "happy", "laughing", "surprised", "sad", "sleepy", "curious")
SELF_CATEGORIES = ("context", "capability", "limitation", "preference", "relation")
GOAL_CATEGORIES = ("capability_request", "understanding", "connection", "curiosity")


def get_agent_prompt() -> str:
    """Build the agent system prompt from the active persona."""
    from personality import get_personality

    p = get_personality()
    traits = "\n".join(f"- {t}" for t in p.character.core_traits)
    rules = "\n".join(f"- {r}" for r in p.character.rules)

    parts = [p.agent_prompt.strip().format(name=p.name)]
    if traits:
        parts.append(f"## Personality\n{traits}")
    if rules:
        parts.append(f"## Rules\n{rules}")
    parts.append(
        "## Responding\n"
        "You MUST answer with the respond tool, exactly ONCE per conversation turn.\n"
        f"Expressions: {', '.join(EXPRESSIONS)}\n"
        "After respond(), stop calling tools."
    )
    return "\n\n".join(parts)


def get_reflection_prompt(messages: str, goal: str, facts: str, self_knowledge: str) -> str:
    """Build the single-shot reflection prompt from the active persona."""
    from personality import get_personality

    p = get_personality()
    return p.reflection_prompt.strip().format(
        name=p.name,
        messages=messages,
        goal=goal,
        facts=facts,
        self_knowledge=self_knowledge,
    )
