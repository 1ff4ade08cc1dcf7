"""Room participant lookups.

The voice layer only needs two reads from the room backend: the role of a
participant and the list of participants in a room. Both return call roles
(ROLE_INITIATOR / ROLE_RECEIVER); product roles such as "anchor" are mapped
with ``normalize_role``.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional

import requests

from debate_rtc.protocol import normalize_role

logger = logging.getLogger(__name__)


@dataclass
class Participant:
    """A participant row in a room."""

    participant_id: str
    role: str


class RoomDataStore(ABC):
    """Read access to room participants."""

    @abstractmethod
    async def get_role(self, room_id: str, participant_id: str) -> Optional[str]:
        """Return the call role of a participant, or None if not listed."""

    @abstractmethod
    async def list_participants(self, room_id: str) -> List[Participant]:
        """Return every participant listed in a room."""


class StaticRoomDataStore(RoomDataStore):
    """In-memory store for tests and single-machine rooms.

    Args:
        rooms: Mapping of room id to {participant id: role}. Roles may be
            product or call role names.
    """

    def __init__(self, rooms: Optional[Dict[str, Dict[str, str]]] = None):
        self.rooms: Dict[str, Dict[str, str]] = {}
        for room_id, members in (rooms or {}).items():
            for participant_id, role in members.items():
                self.set_role(room_id, participant_id, role)

    def set_role(self, room_id: str, participant_id: str, role: str):
        self.rooms.setdefault(room_id, {})[participant_id] = normalize_role(role)

    async def get_role(self, room_id: str, participant_id: str) -> Optional[str]:
        return self.rooms.get(room_id, {}).get(participant_id)

    async def list_participants(self, room_id: str) -> List[Participant]:
        return [
            Participant(participant_id=pid, role=role)
            for pid, role in self.rooms.get(room_id, {}).items()
        ]


class PostgrestRoomDataStore(RoomDataStore):
    """Reads the ``participants`` table through a PostgREST endpoint.

    Args:
        base_url: Project URL, e.g. "https://abc.supabase.co".
        api_key: Anonymous API key sent as ``apikey``.
        access_token: Optional user JWT; defaults to the API key.
        timeout: HTTP timeout in seconds.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        access_token: Optional[str] = None,
        timeout: float = 10,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.access_token = access_token
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        return {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.access_token or self.api_key}",
            "Accept": "application/json",
        }

    def _fetch(self, params: Dict[str, str]) -> List[dict]:
        response = requests.get(
            f"{self.base_url}/rest/v1/participants",
            params=params,
            headers=self._headers(),
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json()

    def _rows_to_participants(self, rows: List[dict]) -> List[Participant]:
        participants = []
        for row in rows:
            try:
                role = normalize_role(row.get("role"))
            except ValueError:
                logger.warning(f"Skipping participant {row.get('user_id')} with role {row.get('role')!r}")
                continue
            participants.append(Participant(participant_id=row["user_id"], role=role))
        return participants

    async def get_role(self, room_id: str, participant_id: str) -> Optional[str]:
        params = {
            "room_id": f"eq.{room_id}",
            "user_id": f"eq.{participant_id}",
            "select": "user_id,role",
        }
        rows = await asyncio.to_thread(self._fetch, params)
        participants = self._rows_to_participants(rows)
        if not participants:
            return None
        return participants[0].role

    async def list_participants(self, room_id: str) -> List[Participant]:
        params = {"room_id": f"eq.{room_id}", "select": "user_id,role"}
        rows = await asyncio.to_thread(self._fetch, params)
        participants = self._rows_to_participants(rows)
        logger.debug(f"Room {room_id} has {len(participants)} participant(s)")
        return participants
