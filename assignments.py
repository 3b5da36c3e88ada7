"""Student-to-route assignments and the conflict check that gates saving them."""
from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from repository import Repository


ASSIGNMENT_KIND = "assignment"


class AssignmentStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


def parse_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


@dataclass
class Assignment:
    student_id: str
    route_id: str
    effective_date: date
    end_date: Optional[date] = None  # None = open-ended
    status: AssignmentStatus = AssignmentStatus.ACTIVE
    assignment_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def overlaps_with(self, other: "Assignment") -> bool:
        """Same student and intersecting date ranges (open end = +inf)."""
        if self.student_id != other.student_id:
            return False
        starts_before_other_ends = other.end_date is None or self.effective_date <= other.end_date
        other_starts_before_end = self.end_date is None or other.effective_date <= self.end_date
        return starts_before_other_ends and other_starts_before_end

    def is_active_on(self, day: date) -> bool:
        if self.status != AssignmentStatus.ACTIVE:
            return False
        if day < self.effective_date:
            return False
        return self.end_date is None or day <= self.end_date

    def extend(self, new_end_date: Optional[date] = None) -> None:
        """Move the end date; ``None`` makes the assignment open-ended."""
        if new_end_date is not None and new_end_date < self.effective_date:
            raise ValueError("end_date cannot precede effective_date")
        self.end_date = new_end_date

    def deactivate(self, end_date: Optional[date] = None) -> None:
        """End the assignment. Without an explicit date it ends today, or on
        its first day if it has not started yet."""
        if end_date is not None and end_date < self.effective_date:
            raise ValueError("end_date cannot precede effective_date")
        self.status = AssignmentStatus.INACTIVE
        self.end_date = end_date or max(date.today(), self.effective_date)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.assignment_id,
            "student_id": self.student_id,
            "route_id": self.route_id,
            "effective_date": self.effective_date.isoformat(),
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Assignment":
        student_id = raw.get("student_id")
        route_id = raw.get("route_id")
        effective = parse_date(raw.get("effective_date"))
        if not student_id or not route_id or effective is None:
            raise ValueError("assignment requires student_id, route_id and effective_date")
        end = parse_date(raw.get("end_date"))
        if end is not None and end < effective:
            raise ValueError("end_date cannot precede effective_date")
        return cls(
            student_id=str(student_id),
            route_id=str(route_id),
            effective_date=effective,
            end_date=end,
            status=AssignmentStatus(raw.get("status") or AssignmentStatus.ACTIVE.value),
            assignment_id=str(raw.get("id") or raw.get("assignment_id") or uuid.uuid4().hex),
        )


def find_conflicts(candidate: Assignment, existing: Iterable[Assignment]) -> List[Assignment]:
    """Every existing active assignment of the same student that overlaps ``candidate``.

    Pure: nothing is mutated. The candidate itself (same id) is skipped so an
    update can be checked against the stored version of the same record.
    """
    if candidate.status != AssignmentStatus.ACTIVE:
        return []
    return [
        other
        for other in existing
        if other.assignment_id != candidate.assignment_id
        and other.status == AssignmentStatus.ACTIVE
        and candidate.overlaps_with(other)
    ]


class ConflictDetected(Exception):
    def __init__(self, candidate: Assignment, conflicts: List[Assignment]):
        self.candidate = candidate
        self.conflicts = conflicts
        ids = ", ".join(c.assignment_id for c in conflicts)
        super().__init__(f"assignment for student {candidate.student_id} overlaps: {ids}")


class StaleSnapshot(RuntimeError):
    """The student's assignments changed between the check and the commit."""


class AssignmentWriter:
    """
    Assignment-save workflow.

    Writes for one student are serialized with a per-student lock, and every
    commit bumps that student's version; a commit whose snapshot version is
    behind is refused. Two overlapping assignments therefore can never both
    pass the conflict check.
    """

    def __init__(self, repository: Repository):
        self.repository = repository
        self._assignments: Dict[str, Assignment] = {}
        self._versions: Dict[str, int] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    async def load(self) -> int:
        loaded = 0
        for raw in await self.repository.list(ASSIGNMENT_KIND):
            try:
                assignment = Assignment.from_dict(raw)
            except (ValueError, TypeError) as exc:
                print(f"[assignments] skipping malformed record {raw.get('id')}: {exc}")
                continue
            self._assignments[assignment.assignment_id] = assignment
            loaded += 1
        return loaded

    def _lock_for(self, student_id: str) -> asyncio.Lock:
        lock = self._locks.get(student_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[student_id] = lock
        return lock

    def get(self, assignment_id: str) -> Optional[Assignment]:
        return self._assignments.get(assignment_id)

    def for_student(self, student_id: str) -> List[Assignment]:
        return [a for a in self._assignments.values() if a.student_id == student_id]

    def version(self, student_id: str) -> int:
        return self._versions.get(student_id, 0)

    def check(self, candidate: Assignment) -> List[Assignment]:
        return find_conflicts(candidate, self.for_student(candidate.student_id))

    async def create(self, candidate: Assignment, *, expected_version: Optional[int] = None) -> Assignment:
        """Check and commit. Raises ``ConflictDetected`` with the full conflict list."""
        async with self._lock_for(candidate.student_id):
            self._check_version(candidate.student_id, expected_version)
            conflicts = self.check(candidate)
            if conflicts:
                print(
                    f"[assignments] blocked student={candidate.student_id} route={candidate.route_id}: "
                    f"{len(conflicts)} conflict(s)"
                )
                raise ConflictDetected(candidate, conflicts)
            await self.repository.create(ASSIGNMENT_KIND, candidate.to_dict())
            self._commit(candidate)
            return candidate

    async def extend(self, assignment_id: str, new_end_date: Optional[date]) -> Assignment:
        current = self._require(assignment_id)
        async with self._lock_for(current.student_id):
            updated = Assignment.from_dict(current.to_dict())
            updated.extend(new_end_date)
            conflicts = self.check(updated)
            if conflicts:
                raise ConflictDetected(updated, conflicts)
            await self.repository.save(ASSIGNMENT_KIND, updated.to_dict())
            self._commit(updated)
            return updated

    async def deactivate(self, assignment_id: str, end_date: Optional[date] = None) -> Assignment:
        current = self._require(assignment_id)
        async with self._lock_for(current.student_id):
            current.deactivate(end_date)
            await self.repository.save(ASSIGNMENT_KIND, current.to_dict())
            self._commit(current)
            return current

    def _require(self, assignment_id: str) -> Assignment:
        assignment = self._assignments.get(assignment_id)
        if assignment is None:
            raise KeyError(assignment_id)
        return assignment

    def _check_version(self, student_id: str, expected_version: Optional[int]) -> None:
        if expected_version is None:
            return
        current = self.version(student_id)
        if current != expected_version:
            raise StaleSnapshot(
                f"student {student_id} assignments at version {current}, expected {expected_version}"
            )

    def _commit(self, assignment: Assignment) -> None:
        self._assignments[assignment.assignment_id] = assignment
        self._versions[assignment.student_id] = self.version(assignment.student_id) + 1


__all__ = [
    "Assignment",
    "AssignmentStatus",
    "AssignmentWriter",
    "ConflictDetected",
    "StaleSnapshot",
    "find_conflicts",
]
