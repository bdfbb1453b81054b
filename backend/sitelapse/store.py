# backend/sitelapse/store.py
import logging
import threading
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func
from sqlmodel import Session, select

from .db import init_db
from .models import FAILED, PROCESSING, QUEUED, STARTING, Job

logger = logging.getLogger(__name__)


class RequestStore:
    """Durable job records keyed by id; the scheduler only talks to this interface."""

    def get(self, job_id: str) -> Optional[Job]:
        raise NotImplementedError

    def list(self, kind: Optional[str] = None, status: Optional[str] = None) -> List[Job]:
        raise NotImplementedError

    def add(self, job: Job) -> Job:
        raise NotImplementedError

    def update(self, job_id: str, **fields) -> Optional[Job]:
        raise NotImplementedError

    def delete(self, job_id: str) -> bool:
        raise NotImplementedError

    def next_queued(self, kind: str) -> Optional[Job]:
        jobs = self.list(kind=kind, status=QUEUED)
        return jobs[0] if jobs else None

    def fail_interrupted(self) -> int:
        """Mark jobs a previous process left mid-flight as failed."""
        count = 0
        for status in (STARTING, PROCESSING):
            for job in self.list(status=status):
                self.update(job.id, status=FAILED, progress_message="Interrupted by restart",
                            error="interrupted by restart")
                count += 1
        if count:
            logger.warning("Marked %d interrupted jobs as failed", count)
        return count


class SqlRequestStore(RequestStore):
    def __init__(self, engine):
        self.engine = engine
        self._add_lock = threading.Lock()
        init_db(engine)

    def _session(self) -> Session:
        # records are handed out detached, so keep their loaded state after commit
        return Session(self.engine, expire_on_commit=False)

    def get(self, job_id: str) -> Optional[Job]:
        with self._session() as session:
            return session.get(Job, job_id)

    def list(self, kind: Optional[str] = None, status: Optional[str] = None) -> List[Job]:
        stmt = select(Job)
        if kind:
            stmt = stmt.where(Job.kind == kind)
        if status:
            stmt = stmt.where(Job.status == status)
        stmt = stmt.order_by(Job.seq)
        with self._session() as session:
            return list(session.exec(stmt).all())

    def add(self, job: Job) -> Job:
        with self._add_lock, self._session() as session:
            last = session.exec(select(func.max(Job.seq))).one()
            job.seq = (last or 0) + 1
            job.created_at = job.created_at or datetime.utcnow()
            job.updated_at = datetime.utcnow()
            session.add(job)
            session.commit()
            session.refresh(job)
            return job

    def update(self, job_id: str, **fields) -> Optional[Job]:
        with self._session() as session:
            job = session.get(Job, job_id)
            if not job:
                return None
            for name, value in fields.items():
                setattr(job, name, value)
            job.updated_at = datetime.utcnow()
            session.add(job)
            session.commit()
            session.refresh(job)
            return job

    def delete(self, job_id: str) -> bool:
        with self._session() as session:
            job = session.get(Job, job_id)
            if not job:
                return False
            session.delete(job)
            session.commit()
            return True

