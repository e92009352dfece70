"""
Handler directory: the people, teams and queues that routing can target.

The directory answers "does this handler still exist" for rule validation
and fail-closed resolution, and supplies skills for same-skill alternatives.
It can be seeded from a JSON file of the form::

    {
      "persons": [{"id": "alice", "skills": ["billing"], "team_ids": ["finance"]}],
      "teams": [{"id": "finance", "member_ids": ["alice"]}],
      "queues": [{"name": "general"}]
    }
"""

import json
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from loguru import logger

from task_router.models import Person, Queue, Team


class HandlerDirectory:
    """In-memory registry of routing targets."""

    def __init__(self):
        self._persons: Dict[str, Person] = {}
        self._teams: Dict[str, Team] = {}
        self._queues: Dict[str, Queue] = {}

    # ----- mutation -----

    def upsert_person(self, person: Person) -> Person:
        self._persons[person.id] = person
        for team_id in person.team_ids:
            team = self._teams.get(team_id)
            if team is not None and person.id not in team.member_ids:
                team.member_ids.append(person.id)
        return person

    def upsert_team(self, team: Team) -> Team:
        self._teams[team.id] = team
        for member_id in team.member_ids:
            person = self._persons.get(member_id)
            if person is not None and team.id not in person.team_ids:
                person.team_ids.append(team.id)
        return team

    def add_queue(self, queue: Union[Queue, str]) -> Queue:
        if isinstance(queue, str):
            queue = Queue(name=queue)
        self._queues[queue.name] = queue
        return queue

    def remove_person(self, person_id: str) -> bool:
        if self._persons.pop(person_id, None) is None:
            return False
        for team in self._teams.values():
            if person_id in team.member_ids:
                team.member_ids.remove(person_id)
        return True

    def load_file(self, path: Union[str, Path]) -> None:
        """Seed the directory from a JSON file."""
        path = Path(path)
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)

        for raw in data.get("persons", []):
            self.upsert_person(Person(**raw))
        for raw in data.get("teams", []):
            self.upsert_team(Team(**raw))
        for raw in data.get("queues", []):
            self.add_queue(Queue(**raw) if isinstance(raw, dict) else Queue(name=str(raw)))

        logger.info(
            "Handler directory loaded",
            path=str(path),
            persons=len(self._persons),
            teams=len(self._teams),
            queues=len(self._queues)
        )

    # ----- lookup -----

    def get_person(self, person_id: str) -> Optional[Person]:
        return self._persons.get(person_id)

    def has_person(self, person_id: str) -> bool:
        person = self._persons.get(person_id)
        return person is not None and person.active

    def has_team(self, team_id: str) -> bool:
        return team_id in self._teams

    def has_queue(self, name: str) -> bool:
        return name in self._queues

    def team_members(self, team_id: str) -> List[Person]:
        """Active members of a team, in the team's member order."""
        team = self._teams.get(team_id)
        if team is None:
            return []
        members = [self._persons.get(member_id) for member_id in team.member_ids]
        return [m for m in members if m is not None and m.active]

    def persons_with_skills(self, skills: Iterable[str], exclude: Iterable[str] = ()) -> List[Person]:
        """Active persons sharing at least one of the given skills."""
        wanted = {s.lower() for s in skills}
        excluded = set(exclude)
        if not wanted:
            return []
        return [
            p for p in self._persons.values()
            if p.active and p.id not in excluded and wanted.intersection(s.lower() for s in p.skills)
        ]

    def skill_overlap(self, person_id: str, categories: Iterable[str]) -> float:
        """Fraction of the request categories covered by the person's skills."""
        person = self._persons.get(person_id)
        wanted = {c.lower() for c in categories}
        if person is None or not wanted:
            return 0.0
        have = {s.lower() for s in person.skills}
        return len(have.intersection(wanted)) / len(wanted)

    def snapshot(self) -> Dict[str, list]:
        return {
            "persons": [p.model_dump() for p in self._persons.values()],
            "teams": [t.model_dump() for t in self._teams.values()],
            "queues": [q.model_dump() for q in self._queues.values()],
        }
