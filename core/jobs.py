from __future__ import annotations

import threading
import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from core.errors import NotFound, ValidationError, VersionConflict


class JobState(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED, JobState.CANCELED})

_ALLOWED_TRANSITIONS = {
    JobState.PENDING: {JobState.PROCESSING, JobState.COMPLETED, JobState.FAILED, JobState.CANCELED},
    JobState.PROCESSING: {JobState.COMPLETED, JobState.FAILED, JobState.CANCELED},
}


def can_transition(current: JobState, target: JobState) -> bool:
    if current == target:
        return not current.is_terminal
    return target in _ALLOWED_TRANSITIONS.get(current, set())


class JobRequest(BaseModel):
    prompt: str
    model: str
    duration_seconds: int
    resolution: Optional[str] = None
    aspect_ratio: str = "16:9"


class UserSession(BaseModel):
    email: str
    plan: str = "free"


class GenerationJob(BaseModel):
    id: str
    owner_id: str
    prompt: str
    model_ref: str
    duration_seconds: int
    resolution: str
    aspect_ratio: str = "16:9"
    state: JobState = JobState.PENDING
    credits_reserved: int
    external_job_id: Optional[str] = None
    output_ref: Optional[str] = None
    error_message: Optional[str] = None
    callback_url: Optional[str] = None
    poll_attempts: int = 0
    version: int = 1
    created_at: datetime
    updated_at: datetime
    processing_started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    parameters: dict = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal


def new_job_id() -> str:
    return str(uuid.uuid4())


class JobStore:
    """Generation jobs keyed by id, with a version column checked on every write."""

    def __init__(self) -> None:
        self._jobs: Dict[str, GenerationJob] = {}
        self._by_external: Dict[str, str] = {}
        self._lock = threading.Lock()

    def create(
        self,
        owner_id: str,
        request: JobRequest,
        resolution: str,
        credits_reserved: int,
        job_id: Optional[str] = None,
    ) -> GenerationJob:
        now = datetime.utcnow()
        job = GenerationJob(
            id=job_id or new_job_id(),
            owner_id=owner_id,
            prompt=request.prompt,
            model_ref=request.model,
            duration_seconds=request.duration_seconds,
            resolution=resolution,
            aspect_ratio=request.aspect_ratio,
            credits_reserved=credits_reserved,
            created_at=now,
            updated_at=now,
            parameters=request.model_dump(),
        )
        with self._lock:
            if job.id in self._jobs:
                raise ValidationError(f"job {job.id} already exists")
            self._jobs[job.id] = job
        return job

    def get(self, job_id: str) -> Optional[GenerationJob]:
        with self._lock:
            return self._jobs.get(job_id)

    def require(self, job_id: str) -> GenerationJob:
        job = self.get(job_id)
        if not job:
            raise NotFound(f"job {job_id} not found", user_message="Job not found")
        return job

    def exists(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._jobs

    def get_by_external_id(self, external_job_id: str) -> Optional[GenerationJob]:
        with self._lock:
            job_id = self._by_external.get(external_job_id)
            return self._jobs.get(job_id) if job_id else None

    def update(self, job_id: str, expected_version: Optional[int] = None, **updates) -> GenerationJob:
        with self._lock:
            current = self._jobs.get(job_id)
            if not current:
                raise NotFound(f"job {job_id} not found", user_message="Job not found")
            if expected_version is not None and current.version != expected_version:
                raise VersionConflict(job_id, expected_version, current.version)

            target = updates.get("state")
            if target is not None:
                target = JobState(target)
                if not can_transition(current.state, target):
                    raise ValidationError(
                        f"illegal transition {current.state.value} -> {target.value} for job {job_id}"
                    )
            elif current.is_terminal and "credits_reserved" in updates:
                raise ValidationError(f"job {job_id} is terminal")

            payload = current.model_dump()
            payload.update(updates)
            payload["version"] = current.version + 1
            payload["updated_at"] = datetime.utcnow()
            new_job = GenerationJob(**payload)
            self._jobs[job_id] = new_job

            external_id = new_job.external_job_id
            if external_id and external_id != current.external_job_id:
                self._by_external[external_id] = job_id
            return new_job

    def list_by_owner(self, owner_id: str) -> List[GenerationJob]:
        with self._lock:
            jobs = [job for job in self._jobs.values() if job.owner_id == owner_id]
        return sorted(jobs, key=lambda job: job.created_at, reverse=True)

    def list_by_state(self, *states: JobState) -> List[GenerationJob]:
        wanted = set(states)
        with self._lock:
            return [job for job in self._jobs.values() if job.state in wanted]

    def list_stale(self, now: datetime, max_age: timedelta) -> List[GenerationJob]:
        cutoff = now - max_age
        stale: list[GenerationJob] = []
        with self._lock:
            for job in self._jobs.values():
                if job.state == JobState.PROCESSING:
                    started = job.processing_started_at or job.created_at
                    if started < cutoff:
                        stale.append(job)
                elif job.state == JobState.PENDING and job.created_at < cutoff:
                    stale.append(job)
        return stale
