"""CouchDB-backed append-only store of question/answer turns."""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any

import httpx

from core.config import settings
from core.errors import StoreError
from core.models import ConversationTurn, DatabaseInfo

logger = logging.getLogger(__name__)

DESIGN_DOC_ID = "_design/conversations"
TURN_TYPE = "conversation"

DESIGN_DOC = {
    "_id": DESIGN_DOC_ID,
    "views": {
        "by_timestamp": {
            "map": (
                "function(doc) { if (doc.type === 'conversation' && doc.timestamp) "
                "{ emit(doc.timestamp, doc); } }"
            )
        },
        "by_session_id": {
            "map": (
                "function(doc) { if (doc.type === 'conversation' && doc.sessionId) "
                "{ emit(doc.sessionId, doc); } }"
            )
        },
    },
}


def utc_timestamp() -> str:
    """Fixed-width ISO-8601 UTC timestamp; sorts lexicographically in time order."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class ConversationStore:
    """Conversation history in a CouchDB database.

    Turns are stored as documents of `type="conversation"` and read back
    through the `by_timestamp` and `by_session_id` views of the
    `_design/conversations` design document.
    """

    def __init__(
        self,
        base_url: str | None = None,
        database: str | None = None,
        username: str | None = None,
        password: str | None = None,
        http_client: httpx.Client | None = None,
    ):
        base_url = base_url or settings.couchdb_url
        self.database = database or settings.couchdb_database
        self._db_url = f"{base_url.rstrip('/')}/{self.database}"
        if http_client is None:
            http_client = httpx.Client(
                auth=(username or settings.couchdb_user, password or settings.couchdb_password),
                timeout=settings.couchdb_timeout,
            )
        self._client = http_client

    def close(self) -> None:
        self._client.close()

    def initialize(self) -> None:
        """Create the database and design document if missing. Idempotent."""
        response = self._send("HEAD", "")
        if response.status_code == 404:
            response = self._send("PUT", "")
            if response.status_code != 412:
                self._check(response)
            logger.info("Created CouchDB database: %s", self.database)
        else:
            self._check(response)

        response = self._send("PUT", f"/{DESIGN_DOC_ID}", json=DESIGN_DOC)
        if response.status_code == 409:
            logger.debug("Design document already present")
        else:
            self._check(response)
            logger.info("Installed design document %s", DESIGN_DOC_ID)

    def append(
        self,
        session_id: str,
        question: str,
        answer: str,
        sources: list[str] | None = None,
        model: str | None = None,
    ) -> str:
        """Persist a new turn and return its id. Never overwrites."""
        turn_id = str(uuid.uuid4())
        doc = {
            "_id": turn_id,
            "type": TURN_TYPE,
            "sessionId": session_id,
            "question": question,
            "response": answer,
            "model": model,
            "timestamp": utc_timestamp(),
            "sources": list(sources or []),
        }
        self._check(self._send("PUT", f"/{turn_id}", json=doc))
        logger.info("Stored conversation turn %s for session %s", turn_id, session_id)
        return turn_id

    def history(self, session_id: str, limit: int = 10) -> list[ConversationTurn]:
        """Turns of one session, newest first, at most `limit`."""
        rows = self._view("by_session_id", key=json.dumps(session_id))
        turns = sorted(
            (self._to_turn(row) for row in rows),
            key=lambda t: t.timestamp,
            reverse=True,
        )
        return turns[:limit]

    def recent(self, limit: int = 10) -> list[ConversationTurn]:
        """Most recent turns across all sessions, newest first."""
        rows = self._view("by_timestamp", limit=limit, descending="true")
        return [self._to_turn(row) for row in rows]

    def search_by_keyword(self, keyword: str, limit: int = 100) -> list[ConversationTurn]:
        """Case-insensitive substring match over the `limit` most recent turns."""
        needle = keyword.lower()
        return [
            turn
            for turn in self.recent(limit)
            if needle in turn.question.lower() or needle in turn.answer.lower()
        ]

    def get_document(self, doc_id: str) -> dict[str, Any]:
        response = self._send("GET", f"/{doc_id}")
        self._check(response)
        return response.json()

    def database_info(self) -> DatabaseInfo:
        response = self._send("GET", "")
        self._check(response)
        data = response.json()
        return DatabaseInfo(
            name=data.get("db_name", self.database),
            doc_count=data.get("doc_count", 0),
            deleted_doc_count=data.get("doc_del_count", 0),
            disk_size=data.get("sizes", {}).get("file", data.get("disk_size", 0)),
        )

    def _view(self, view: str, **params: Any) -> list[dict[str, Any]]:
        response = self._send("GET", f"/{DESIGN_DOC_ID}/_view/{view}", params=params)
        self._check(response)
        return response.json().get("rows", [])

    def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        url = f"{self._db_url}{path}"
        logger.debug("%s %s", method, url)
        try:
            return self._client.request(method, url, **kwargs)
        except httpx.RequestError as e:
            raise StoreError(f"CouchDB request to {url} failed: {e}") from e

    @staticmethod
    def _check(response: httpx.Response) -> None:
        if response.status_code >= 400:
            raise StoreError(
                f"CouchDB returned HTTP {response.status_code}",
                status=response.status_code,
                body=response.text,
            )

    @staticmethod
    def _to_turn(row: dict[str, Any]) -> ConversationTurn:
        doc = row.get("value") or row.get("doc") or {}
        return ConversationTurn(
            id=doc.get("_id", row.get("id", "")),
            session_id=doc.get("sessionId", ""),
            question=doc.get("question", ""),
            answer=doc.get("response", ""),
            timestamp=doc.get("timestamp", ""),
            sources=doc.get("sources") or [],
            model=doc.get("model"),
        )
