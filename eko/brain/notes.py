"""Read-only lookup over the family notes (JSON file written by the chat backend)."""

import logging
import re
from typing import Optional

from brain.memory import parse_timestamp
from config import NOTES_FILE, NOTES_SEARCH_LIMIT
from utils.persistent_store import PersistentStore

logger = logging.getLogger("eko.notes")

PREVIEW_CHARS = 100


class NotesStore:
    """Notes are {id, title, content, type: note|checklist, items[{text, checked}], isArchived, createdAt, updatedAt}."""

    def __init__(self, file_path: str = NOTES_FILE, store: Optional[PersistentStore] = None):
        self._store = store or PersistentStore(file_path, default_data={"notes": []})

    def _notes(self) -> list[dict]:
        self._store.reload()
        return self._store.get("notes", []) or []

    def search(self, query: str, limit: int = NOTES_SEARCH_LIMIT) -> list[dict]:
        """Case-insensitive match on title, content and checklist items. Newest first, archived excluded."""
        pattern = re.compile(re.escape(query), re.IGNORECASE)

        def matches(note: dict) -> bool:
            if pattern.search(note.get("title") or "") or pattern.search(note.get("content") or ""):
                return True
            return any(pattern.search(i.get("text") or "") for i in note.get("items") or [])

        hits = [n for n in self._notes() if not n.get("isArchived") and matches(n)]
        hits.sort(key=lambda n: n.get("updatedAt") or "", reverse=True)
        logger.info("Notes search %r: %d found", query, len(hits))
        return hits[:limit]

    def get(self, note_id: str) -> Optional[dict]:
        for note in self._notes():
            if str(note.get("id")) == note_id:
                return note
        return None


def _checklist(note: dict, sep: str) -> str:
    return sep.join(f"{'✓' if i.get('checked') else '○'} {i.get('text', '')}" for i in note.get("items") or [])


def format_note_preview(note: dict) -> str:
    """One line per note: - [id] "title" : preview."""
    if note.get("type") == "checklist" and note.get("items"):
        preview = _checklist(note, ", ")
    else:
        preview = note.get("content") or ""
    if len(preview) > PREVIEW_CHARS:
        preview = preview[:PREVIEW_CHARS] + "..."
    return f"- [{note.get('id')}] \"{note.get('title') or 'Sans titre'}\" : {preview}"


def format_note(note: dict) -> str:
    created = parse_timestamp(note.get("createdAt"))
    lines = [
        f"Titre: {note.get('title') or 'Sans titre'}",
        f"Type: {note.get('type', 'note')}",
        f"Créée le: {created.strftime('%d/%m/%Y') if created else '?'}",
        "",
    ]
    if note.get("type") == "checklist" and note.get("items"):
        lines.append("Checklist:")
        lines.append(_checklist(note, "\n"))
    elif note.get("content"):
        lines.append("Contenu:")
        lines.append(note["content"])
    return "\n".join(lines)
