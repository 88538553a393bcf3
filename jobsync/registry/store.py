from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Optional

from jobsync.models import Job, JobBucket, JobStats, JobStatus
from jobsync.telemetry.audit import AuditLogger


RegistryListener = Callable[["JobRegistry"], None]

_BUCKETS: Dict[JobStatus, JobBucket] = {
    JobStatus.downloading: JobBucket.active,
    JobStatus.queued: JobBucket.queued,
    JobStatus.completed: JobBucket.completed,
    JobStatus.failed: JobBucket.failed,
}


def classify(status: JobStatus) -> JobBucket:
    return _BUCKETS[status]


def _apply_invariants(job: Job, *, previous: Optional[Job] = None) -> Job:
    # error only exists on failed jobs; failed jobs have no meaningful progress.
    if job.status is JobStatus.failed:
        if job.progress is not None:
            job = job.model_copy(update={"progress": None})
    elif job.error is not None:
        job = job.model_copy(update={"error": None})
    if previous is not None and previous.status is JobStatus.failed and job.status is not JobStatus.failed and job.progress is None:
        job = job.model_copy(update={"progress": 0.0})
    return job


class JobRegistry:
    """
    Single source of truth for job state, shared by the push and poll paths.

    Deterministic reducer: no I/O, no timers. Bucket lists are rebuilt after every
    mutation so membership always matches `status`.
    """

    def __init__(self, *, audit: AuditLogger | None = None) -> None:
        self._jobs: Dict[str, Job] = {}
        self._buckets: Dict[JobBucket, List[str]] = {b: [] for b in JobBucket}
        self._listeners: List[RegistryListener] = []
        self._audit = audit

    # ---- mutation ----

    def set_all(self, jobs: Iterable[Job]) -> None:
        fresh: Dict[str, Job] = {}
        for job in jobs:
            fresh[job.id] = _apply_invariants(job, previous=self._jobs.get(job.id))
        self._jobs = fresh
        self._changed()

    def upsert(self, job_id: str, update: Dict[str, Any]) -> Job:
        """
        Merge `update` into the job. Unknown ids are created with defaults
        (queued, progress 0), so a late partial event still yields a valid record.
        """
        fields = {k: v for k, v in (update or {}).items() if k != "id"}
        existing = self._jobs.get(job_id)
        base = existing.model_dump() if existing is not None else {"id": job_id}
        job = Job.model_validate({**base, **fields, "id": job_id})
        job = _apply_invariants(job, previous=existing)
        self._jobs[job_id] = job
        self._changed()
        return job

    def remove(self, job_id: str) -> Optional[Job]:
        job = self._jobs.pop(job_id, None)
        if job is not None:
            self._changed()
        return job

    def retry(self, job_id: str) -> Job:
        return self.upsert(job_id, {"status": JobStatus.queued, "progress": 0.0, "error": None})

    def clear_completed(self) -> List[str]:
        removed = [jid for jid, j in self._jobs.items() if j.status is JobStatus.completed]
        if not removed:
            return []
        for jid in removed:
            self._jobs.pop(jid, None)
        self._changed()
        return removed

    # ---- reads ----

    def get(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def jobs(self) -> List[Job]:
        return list(self._jobs.values())

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs

    def bucket(self, bucket: JobBucket) -> List[Job]:
        return [self._jobs[jid] for jid in self._buckets[bucket]]

    def bucket_of(self, job_id: str) -> Optional[JobBucket]:
        job = self._jobs.get(job_id)
        return classify(job.status) if job is not None else None

    @property
    def active_jobs(self) -> List[Job]:
        return self.bucket(JobBucket.active)

    @property
    def queued_jobs(self) -> List[Job]:
        return self.bucket(JobBucket.queued)

    @property
    def completed_jobs(self) -> List[Job]:
        return self.bucket(JobBucket.completed)

    @property
    def failed_jobs(self) -> List[Job]:
        return self.bucket(JobBucket.failed)

    def bucket_ids(self) -> Dict[JobBucket, List[str]]:
        return {b: list(ids) for b, ids in self._buckets.items()}

    def stats(self) -> JobStats:
        jobs = self._jobs.values()
        return JobStats(
            total_jobs=len(self._jobs),
            total_completed=len(self._buckets[JobBucket.completed]),
            total_failed=len(self._buckets[JobBucket.failed]),
            total_bytes=sum(j.total_bytes or 0 for j in jobs),
            downloaded_bytes=sum(j.downloaded_bytes or 0 for j in jobs),
        )

    # ---- subscriptions ----

    def subscribe(self, listener: RegistryListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return _unsubscribe

    def _changed(self) -> None:
        buckets: Dict[JobBucket, List[str]] = {b: [] for b in JobBucket}
        for jid, job in self._jobs.items():
            buckets[classify(job.status)].append(jid)
        self._buckets = buckets
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as e:  # noqa: BLE001
                if self._audit is not None:
                    self._audit.write("registry", "registry.listener_failed", {"error": f"{type(e).__name__}: {e}"})
