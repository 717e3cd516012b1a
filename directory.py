"""Contracts for the persistent collaborators, plus in-memory implementations.

Users, teams and message history live in the document store owned by the web
application. The realtime layer only needs the narrow operations below.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Protocol

from logging_config import get_logger

logger = get_logger(__name__)


class UserDirectory(Protocol):
    async def find_by_id(self, user_id: str) -> Optional[Dict[str, Any]]:
        ...

    async def touch_last_seen(self, user_id: str) -> None:
        ...


class TeamDirectory(Protocol):
    async def find_by_id(self, team_id: str) -> Optional[Dict[str, Any]]:
        ...


class MessageStore(Protocol):
    async def append(self, room_id: str, message: Dict[str, Any]) -> None:
        ...


class SummaryProvider(Protocol):
    async def summary_for(self, user_id: str) -> Optional[Dict[str, Any]]:
        ...


async def can_join_room(teams: TeamDirectory, room_id: str, user_id: str) -> bool:
    """A room is a team; its admin and members may occupy it."""
    team = await teams.find_by_id(room_id)
    if not team or not team.get("isActive", True):
        return False
    members = {str(m) for m in team.get("members", ())}
    return str(user_id) in members or str(team.get("admin")) == str(user_id)


class InMemoryUserDirectory:
    def __init__(self, users: Optional[Iterable[Dict[str, Any]]] = None):
        self.users: Dict[str, Dict[str, Any]] = {str(u["id"]): dict(u) for u in users or ()}

    def add(self, user_id: str, **fields):
        self.users[str(user_id)] = {"id": str(user_id), **fields}

    async def find_by_id(self, user_id):
        return self.users.get(str(user_id))

    async def touch_last_seen(self, user_id):
        user = self.users.get(str(user_id))
        if user is not None:
            user["lastSeen"] = datetime.now(timezone.utc).isoformat()


class InMemoryTeamDirectory:
    def __init__(self, teams: Optional[Iterable[Dict[str, Any]]] = None):
        self.teams: Dict[str, Dict[str, Any]] = {str(t["id"]): dict(t) for t in teams or ()}

    def add(self, team_id: str, members: Iterable[str] = (), admin: Optional[str] = None, **fields):
        self.teams[str(team_id)] = {"id": str(team_id), "members": list(members), "admin": admin, **fields}

    async def find_by_id(self, team_id):
        return self.teams.get(str(team_id))


class InMemoryMessageStore:
    def __init__(self):
        self.messages: Dict[str, List[Dict[str, Any]]] = {}

    async def append(self, room_id, message):
        self.messages.setdefault(room_id, []).append(dict(message))


class TeamSummaryProvider:
    """Organiser summary: team, member and task counts across teams the user administers."""

    def __init__(self, teams: InMemoryTeamDirectory):
        self.teams = teams

    async def summary_for(self, user_id):
        owned = [t for t in self.teams.teams.values() if str(t.get("admin")) == str(user_id) and t.get("isActive", True)]
        if not owned:
            return None
        total_tasks = sum(t.get("stats", {}).get("totalTasks", 0) for t in owned)
        completed = sum(t.get("stats", {}).get("completedTasks", 0) for t in owned)
        return {
            "totalTeams": len(owned),
            "totalMembers": sum(len(t.get("members", ())) for t in owned),
            "totalTasks": total_tasks,
            "activeTasks": total_tasks - completed,
            "completedTasks": completed,
            "completionRate": round(completed / total_tasks * 100) if total_tasks else 0,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
