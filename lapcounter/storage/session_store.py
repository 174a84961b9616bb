"""
Session Store: Session aggregate ⇄ blob store adapter

Layout (prefix defaults to "sessions"):

    {prefix}/{session_id}.json                          summary document
    {prefix}/{session_id}/participants/{pid}.json       participant record

The summary is a complete Session document (participants embedded as of the
last summary write), so it is readable on its own. Participant records are
overlaid on load with a monotonic merge (max laps, sticky finished, earliest
finishTime), which makes a stale embedded copy harmless.

A reconciler write touches only the participant records that changed, plus
the summary when a session-level field changed. Writers working on different
participants therefore never overwrite each other.

Consistency:
    The backend makes no read-after-write promise. load() may return a
    stale or missing document right after save(); callers that need to
    know verify by re-reading (see reconciler).

Write ordering:
    Participant records are written before the summary. A session becomes
    visible (load stops returning NotFound) only once its summary exists,
    so a partially written create is invisible and simply retried.
"""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from typing import Any, List, Optional

import lz4.frame

from lapcounter.core import constants as C
from lapcounter.core.errors import LapCounterError, NotFoundError, TransientStoreError
from lapcounter.core.types import Result, Ok, Err
from lapcounter.race.models import Participant, Session
from lapcounter.race.state_machine import (
    diff_participants,
    merge_participant,
    settle_completion,
    summary_changed,
)
from lapcounter.storage.backends import ObjectStoreBackend

logger = logging.getLogger(__name__)


class SessionStore:
    """
    Load/save Session aggregates against an ObjectStoreBackend.

    Usage:
        store = SessionStore(InMemoryObjectStore())
        await store.save(session)
        result = await store.load(session.id)
    """

    __slots__ = ("_backend", "_prefix", "_compress")

    def __init__(
        self,
        backend: ObjectStoreBackend,
        key_prefix: str = C.DEFAULT_KEY_PREFIX,
        compression: str = "none",
    ) -> None:
        self._backend = backend
        self._prefix = key_prefix.strip("/")
        self._compress = compression == "lz4"

    @property
    def backend(self) -> ObjectStoreBackend:
        return self._backend

    # -------------------------------------------------------------------------
    # Keys
    # -------------------------------------------------------------------------

    def summary_key(self, session_id: str) -> str:
        return f"{self._prefix}/{session_id}{C.DOCUMENT_SUFFIX}"

    def participants_prefix(self, session_id: str) -> str:
        return f"{self._prefix}/{session_id}/{C.PARTICIPANTS_SEGMENT}/"

    def participant_key(self, session_id: str, participant_id: str) -> str:
        return f"{self.participants_prefix(session_id)}{participant_id}{C.DOCUMENT_SUFFIX}"

    # -------------------------------------------------------------------------
    # Codec
    # -------------------------------------------------------------------------

    def encode(self, document: dict[str, Any]) -> bytes:
        raw = json.dumps(document, separators=(",", ":")).encode("utf-8")
        if self._compress:
            return lz4.frame.compress(raw)
        return raw

    @staticmethod
    def decode(key: str, data: bytes) -> Result[dict[str, Any], TransientStoreError]:
        """
        Bytes → JSON object. lz4 frames are detected by magic number, so a
        store written with either compression setting stays readable.
        """
        try:
            if data[:4] == C.LZ4_FRAME_MAGIC:
                data = lz4.frame.decompress(data)
            document = json.loads(data)
        except (RuntimeError, ValueError) as e:
            return Err(TransientStoreError.corrupt_document(key, str(e)))
        if not isinstance(document, dict):
            return Err(TransientStoreError.corrupt_document(key, "not a JSON object"))
        return Ok(document)

    # -------------------------------------------------------------------------
    # Load
    # -------------------------------------------------------------------------

    async def load(self, session_id: str) -> Result[Session, LapCounterError]:
        """
        Latest visible Session.

        Returns:
            Ok(session)
            Err(NotFoundError) when no summary is visible
            Err(TransientStoreError) on backend failure or undecodable data
        """
        key = self.summary_key(session_id)
        fetched = await self._backend.get(key)
        if fetched.is_err():
            return fetched
        data = fetched.unwrap()
        if data is None:
            return Err(NotFoundError.session(session_id))

        decoded = self.decode(key, data)
        if decoded.is_err():
            return decoded
        try:
            session = Session.from_dict(decoded.unwrap())
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            return Err(TransientStoreError.corrupt_document(key, repr(e)))

        records = await self._load_participant_records(session)
        if records.is_err():
            return records
        overlaid = records.unwrap()
        if overlaid:
            session = replace(session, participants=tuple(
                merge_participant(p, overlaid[p.id], session.total_laps, None)
                if p.id in overlaid else p
                for p in session.participants
            ))
        return Ok(settle_completion(session))

    async def _load_participant_records(
        self,
        session: Session,
    ) -> Result[dict[str, Participant], LapCounterError]:
        listed = await self._backend.list(self.participants_prefix(session.id))
        if listed.is_err():
            return listed

        roster = set(session.participant_ids)
        records: dict[str, Participant] = {}
        for key in listed.unwrap():
            participant_id = key.rsplit("/", 1)[-1].removesuffix(C.DOCUMENT_SUFFIX)
            if participant_id not in roster:
                logger.warning(
                    "Ignoring participant record outside roster",
                    extra={"session_id": session.id, "key": key},
                )
                continue
            fetched = await self._backend.get(key)
            if fetched.is_err():
                return fetched
            data = fetched.unwrap()
            if data is None:
                # listed but not yet readable; the embedded copy stands in
                continue
            decoded = self.decode(key, data)
            if decoded.is_err():
                return decoded
            try:
                records[participant_id] = Participant.from_dict(decoded.unwrap())
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                return Err(TransientStoreError.corrupt_document(key, repr(e)))
        return Ok(records)

    # -------------------------------------------------------------------------
    # Save
    # -------------------------------------------------------------------------

    async def save(self, session: Session) -> Result[List[str], TransientStoreError]:
        """
        Persist the full snapshot: every participant record, then the summary.

        Idempotent: saving the same session twice overwrites the same keys.
        """
        return await self._write(session, session.participant_ids, write_summary=True)

    async def save_changes(
        self,
        base: Session,
        candidate: Session,
    ) -> Result[List[str], TransientStoreError]:
        """
        Persist only what differs between `base` (as loaded) and `candidate`.

        Returns the keys written; an empty list when nothing changed.
        """
        if base.id != candidate.id:
            raise ValueError("save_changes requires two versions of the same session")
        touched = diff_participants(base, candidate)
        return await self._write(
            candidate,
            touched,
            write_summary=summary_changed(base, candidate),
        )

    async def _write(
        self,
        session: Session,
        participant_ids: tuple[str, ...] | List[str],
        write_summary: bool,
    ) -> Result[List[str], TransientStoreError]:
        written: List[str] = []
        for participant_id in participant_ids:
            participant = session.participant(participant_id)
            if participant is None:
                continue
            key = self.participant_key(session.id, participant_id)
            result = await self._backend.put(key, self.encode(participant.to_dict()))
            if result.is_err():
                return result
            written.append(key)

        if write_summary:
            key = self.summary_key(session.id)
            result = await self._backend.put(key, self.encode(session.to_dict()))
            if result.is_err():
                return result
            written.append(key)

        logger.debug(
            "Session written",
            extra={"session_id": session.id, "keys": len(written)},
        )
        return Ok(written)

    async def exists(self, session_id: str) -> Result[bool, TransientStoreError]:
        fetched = await self._backend.get(self.summary_key(session_id))
        if fetched.is_err():
            return fetched
        return Ok(fetched.unwrap() is not None)

    async def close(self) -> None:
        await self._backend.close()


def decode_session(data: bytes) -> Optional[Session]:
    """Decode a summary blob outside of a store (tooling and tests)."""
    decoded = SessionStore.decode("<blob>", data)
    if decoded.is_err():
        return None
    try:
        return Session.from_dict(decoded.unwrap())
    except (KeyError, TypeError, ValueError, AttributeError):
        return None
