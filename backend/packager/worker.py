from __future__ import annotations
import itertools
import logging
import queue
import threading
import time
import traceback
import uuid
from datetime import timedelta
from typing import Dict, Optional, Union

from .breaker import CircuitBreaker
from .broadcast import ProgressBroadcaster
from .cancellation import CancellationToken
from .config import Settings
from .errors import (
    BuildTimeoutError,
    BuildToolError,
    CancellationError,
    NotCancellableError,
    NotFoundError,
    NotRemovableError,
    NotRetryableError,
    PackagingError,
    ValidationError,
)
from .models import BuildTree, Job, JobStatus, PackagingOptions, PlatformResult, utcnow
from .platforms.base import PlatformPackager
from .storage import SessionStore, cleanup_dir
from .validation import SubmissionValidator
from .versioning import VersionGate

logger = logging.getLogger("packager.worker")

# failures that count against a platform's circuit breaker
BREAKER_KINDS = ("build_tool", "timeout", "error")


class JobQueue:
    """
    Owns every packaging job. Worker threads take queued jobs in
    (priority, submission) order and run one thread per platform unit.
    All job mutations go through this class under the job's own lock.
    """

    def __init__(
        self,
        settings: Settings,
        sessions: SessionStore,
        broadcaster: ProgressBroadcaster,
        gate: VersionGate,
        packagers: Dict[str, PlatformPackager],
    ):
        self.settings = settings
        self.sessions = sessions
        self.broadcaster = broadcaster
        self.packagers = packagers
        self.validator = SubmissionValidator(sessions, gate, known_platforms=packagers.keys())
        self.breaker = CircuitBreaker(settings.BREAKER_THRESHOLD, settings.BREAKER_WINDOW_SECONDS)
        self.q: queue.PriorityQueue[tuple[int, int, str]] = queue.PriorityQueue()
        self.jobs: Dict[str, Job] = {}
        self.lock = threading.Lock()
        self.stop_event = threading.Event()
        self._seq = itertools.count()
        self._executing: set[str] = set()
        self._cancel_times: Dict[str, float] = {}
        self.worker_threads = [
            threading.Thread(target=self._worker_loop, name=f"packager-worker-{i}", daemon=True)
            for i in range(max(1, settings.MAX_CONCURRENT_JOBS))
        ]
        self.gc_thread = threading.Thread(target=self._gc_loop, name="packager-gc", daemon=True)

    # lifecycle

    def start_workers(self):
        for t in self.worker_threads:
            t.start()
        self.gc_thread.start()
        logger.info(f"Job queue started with {len(self.worker_threads)} workers")

    def shutdown(self, timeout: float = 5.0):
        self.stop_event.set()
        with self.lock:
            active = [j.job_id for j in self.jobs.values() if not j.status.terminal]
        for job_id in active:
            try:
                self.cancel(job_id, reason="Service shutting down")
            except (NotCancellableError, NotFoundError):
                pass
        for t in self.worker_threads + [self.gc_thread]:
            if t.is_alive():
                t.join(timeout=timeout)
        logger.info("Job queue stopped")

    # submission

    def submit(
        self,
        session_id: str,
        platforms,
        options: Union[PackagingOptions, dict],
        priority: int = 5,
        retry_of: Optional[str] = None,
    ) -> Job:
        if not isinstance(options, PackagingOptions):
            options = PackagingOptions.from_dict(options or {})
        _tree, requested = self.validator.validate(session_id, platforms, options)
        job = self._enqueue(session_id, requested, options, priority, retry_of)
        logger.info(f"Job {job.job_id} queued for session {session_id}: {', '.join(requested)}")
        return job

    def submit_bulk(self, session_id: str, configs: list[dict]) -> list[Job]:
        """
        Queue one job per config against the same session.
        Each config is {"platforms": [...], "options": {...}, "priority": int}.
        Every config is validated before anything is queued; errors from all of them
        are raised together, prefixed with the config's index.
        """
        if not configs:
            raise ValidationError(["At least one job is required"])

        accepted = []
        errors: list[str] = []
        for i, config in enumerate(configs):
            options = config.get("options") or {}
            if not isinstance(options, PackagingOptions):
                options = PackagingOptions.from_dict(options)
            try:
                _tree, requested = self.validator.validate(session_id, config.get("platforms") or [], options)
            except ValidationError as e:
                errors.extend(f"jobs[{i}]: {err}" for err in e.errors)
                continue
            accepted.append((requested, options, config.get("priority", 5)))
        if errors:
            raise ValidationError(errors)

        queued = [self._enqueue(session_id, requested, options, priority) for requested, options, priority in accepted]
        job_ids = [job.job_id for job in queued]
        self.broadcaster.publish(
            "packaging-bulk-queued", job_id=None, session_id=session_id, job_ids=job_ids, total_jobs=len(job_ids),
        )
        logger.info(f"Queued {len(job_ids)} jobs for session {session_id}")
        return queued

    def _enqueue(self, session_id: str, requested: list[str], options: PackagingOptions,
                 priority: int = 5, retry_of: Optional[str] = None) -> Job:
        job_id = str(uuid.uuid4())
        output_dir = self.settings.jobs_dir / job_id
        output_dir.mkdir(parents=True, exist_ok=True)
        log_path = output_dir / "job.log"
        log_path.touch(exist_ok=True)
        job = Job(
            job_id=job_id,
            session_id=session_id,
            platforms=requested,
            options=options,
            created_at=utcnow(),
            priority=min(10, max(1, int(priority))),
            retry_of=retry_of,
            message="Queued",
            output_dir=output_dir,
            log_path=log_path,
        )
        job.platform_progress = {p: 0.0 for p in requested}
        with self.lock:
            self.jobs[job_id] = job
        self.broadcaster.publish(
            "packaging-queued", job_id=job_id, session_id=session_id, platforms=requested,
            app_name=options.app_name, app_version=options.app_version, retry_of=retry_of,
        )
        self.q.put((job.priority, next(self._seq), job_id))
        return job

    # execution

    def start(self, job_id: str) -> bool:
        """Run a queued job to its terminal state. False if it is not runnable."""
        job = self.get(job_id)
        with self.lock:
            if job_id in self._executing:
                return False
            self._executing.add(job_id)
        try:
            with job.lock:
                if job.status != JobStatus.queued:
                    return False
                job.status = JobStatus.running
                job.started_at = utcnow()
                job.message = "Packaging started"
                job.tokens = {p: CancellationToken(self.settings.UNIT_TIMEOUT_SECONDS) for p in job.platforms}
                self.broadcaster.publish("packaging-started", job_id=job_id, platforms=list(job.platforms))
            self._write_log(job, "=== Job {} ===\nSession: {}\nPlatforms: {}\nApp: {} {}\n".format(
                job_id, job.session_id, ", ".join(job.platforms), job.options.app_name, job.options.app_version))
            logger.info(f"Job {job_id} started")
            try:
                self._execute(job)
            except Exception as e:
                logger.exception(f"Job {job_id}: dispatch error")
                self._write_log(job, "\n" + traceback.format_exc())
                for platform in job.platforms:
                    self._record_result(job, platform, PlatformResult.failure(platform, f"Dispatch error: {e}"))
        finally:
            with self.lock:
                self._executing.discard(job_id)
                self._cancel_times.pop(job_id, None)
        return True

    def _execute(self, job: Job):
        try:
            tree = self.sessions.resolve(job.session_id)
        except NotFoundError as e:
            for platform in job.platforms:
                self._record_result(job, platform, PlatformResult.failure(platform, str(e)))
            return

        units = {}
        for platform in job.platforms:
            t = threading.Thread(
                target=self._run_unit, args=(job, platform, tree),
                name=f"job-{job.job_id[:8]}-{platform}", daemon=True,
            )
            units[platform] = t
            t.start()
        self._watch_units(job, units)

    def _watch_units(self, job: Job, units: Dict[str, threading.Thread]):
        """Wait for the unit threads; settle any that outlive their timeout or a cancel request."""
        grace = self.settings.CANCEL_GRACE_SECONDS
        hard_deadline = time.monotonic() + self.settings.UNIT_TIMEOUT_SECONDS + 2 * grace
        while True:
            alive = [p for p, t in units.items() if t.is_alive()]
            if not alive:
                return
            now = time.monotonic()
            with self.lock:
                cancelled_at = self._cancel_times.get(job.job_id)
            if cancelled_at is not None and now > cancelled_at + 2 * grace:
                for platform in alive:
                    logger.warning(f"Job {job.job_id}: {platform} unit ignored cancellation")
                    self._record_result(job, platform, PlatformResult.cancelled(platform, "Cancelled (forced)"))
                return
            if now > hard_deadline:
                for platform in alive:
                    job.tokens[platform].cancel("Timed out")
                    logger.warning(f"Job {job.job_id}: {platform} unit exceeded {self.settings.UNIT_TIMEOUT_SECONDS:g}s")
                    self._record_result(job, platform, PlatformResult.failure(
                        platform, f"Timed out after {self.settings.UNIT_TIMEOUT_SECONDS:g}s", kind="timeout"))
                return
            units[alive[0]].join(timeout=self.settings.POLL_INTERVAL_SECONDS)

    def _run_unit(self, job: Job, platform: str, tree: BuildTree):
        token: CancellationToken = job.tokens[platform]
        started = utcnow()

        def progress(percent: float, message: str):
            self._on_progress(job, platform, percent, message)

        if self.breaker.is_open(platform):
            result = PlatformResult.failure(platform, f"{platform} packager disabled after repeated failures", kind="circuit_open")
        else:
            packager = self.packagers[platform]
            try:
                result = packager.build(tree, job.options, progress, token, job.output_dir / platform, job.log_path)
            except CancellationError as e:
                result = PlatformResult.cancelled(platform, str(e) or "Cancelled")
            except BuildTimeoutError as e:
                result = PlatformResult.failure(platform, str(e), kind="timeout")
            except BuildToolError as e:
                result = PlatformResult.failure(platform, str(e), kind="build_tool", exit_code=e.exit_code)
            except PackagingError as e:
                result = PlatformResult.failure(platform, str(e))
            except Exception as e:
                logger.exception(f"Job {job.job_id}: {platform} crashed")
                self._write_log(job, f"\n[{platform}] " + traceback.format_exc())
                result = PlatformResult.failure(platform, f"Unexpected error: {e}")

            if token.cancelled and job.cancel_requested and not result.ok:
                result = PlatformResult.cancelled(platform, token.reason or "Cancelled")
            if result.ok:
                self.breaker.record_success(platform)
            elif result.error_kind in BREAKER_KINDS:
                self.breaker.record_failure(platform)

        result.started_at = started
        result.finished_at = utcnow()
        if result.error:
            self._write_log(job, f"[{platform}] {result.outcome.value}: {result.error}\n")
        self._record_result(job, platform, result)

    def _on_progress(self, job: Job, platform: str, percent: float, message: str):
        with job.lock:
            if platform in job.results or job.status.terminal:
                return
            pct = max(job.platform_progress.get(platform, 0.0), min(100.0, max(0.0, float(percent))))
            job.platform_progress[platform] = pct
            job.progress = sum(job.platform_progress.values()) / len(job.platform_progress)
            job.message = message
            self.broadcaster.publish(
                "packaging-progress", job_id=job.job_id, platform=platform,
                progress=round(job.progress, 1), platform_progress=pct, message=message,
            )

    def _record_result(self, job: Job, platform: str, result: PlatformResult) -> bool:
        """Store a unit's result once; the call that stores the last one settles the job."""
        with job.lock:
            if platform in job.results:
                logger.debug(f"Job {job.job_id}: late {platform} result discarded")
                return False
            job.results[platform] = result
            if result.ok:
                job.platform_progress[platform] = 100.0
            job.progress = sum(job.platform_progress.values()) / len(job.platform_progress)
            self.broadcaster.publish(
                "packaging-platform-completed", job_id=job.job_id, platform=platform,
                outcome=result.outcome.value, error=result.error,
                artifacts=[a.to_dict() for a in result.artifacts], progress=round(job.progress, 1),
            )
            if len(job.results) == len(job.platforms):
                self._finalize(job)
            return True

    def _finalize(self, job: Job):
        # caller holds job.lock
        failed = [p for p, r in job.results.items() if not r.ok]
        if job.cancel_requested:
            job.status = JobStatus.cancelled
            job.message = "Cancelled"
            event = "packaging-cancelled"
        elif len(failed) == len(job.platforms):
            job.status = JobStatus.failed
            job.message = "All platforms failed"
            job.error = "; ".join(f"{p}: {job.results[p].error}" for p in failed)
            event = "packaging-failed"
        else:
            job.status = JobStatus.completed
            job.message = f"Completed with failures: {', '.join(failed)}" if failed else "Completed"
            event = "packaging-completed"
        job.progress = 100.0
        job.finished_at = utcnow()
        self.broadcaster.publish(
            event, job_id=job.job_id, status=job.status.value, partial=job.partial,
            progress=job.progress, message=job.message, error=job.error,
            results={p: r.to_dict() for p, r in job.results.items()},
        )
        logger.info(f"Job {job.job_id} {job.status.value}: {job.message}")
        self._write_log(job, f"=== {job.status.value}: {job.message} ===\n")

    # client actions

    def cancel(self, job_id: str, reason: str = "Cancelled by user") -> Job:
        job = self.get(job_id)
        with job.lock:
            if job.status.terminal:
                raise NotCancellableError(f"Job {job_id} is already {job.status.value}")
            job.cancel_requested = True
            if job.status == JobStatus.queued:
                for platform in job.platforms:
                    job.results[platform] = PlatformResult.cancelled(platform, "Cancelled before start")
                job.status = JobStatus.cancelled
                job.message = "Cancelled"
                job.finished_at = utcnow()
                self.broadcaster.publish("packaging-cancelled", job_id=job_id, status=job.status.value,
                                         partial=False, progress=job.progress, message=job.message, error=None,
                                         results={p: r.to_dict() for p, r in job.results.items()})
                logger.info(f"Job {job_id} cancelled before start")
                return job
            with self.lock:
                self._cancel_times[job_id] = time.monotonic()
            for platform, token in job.tokens.items():
                if platform not in job.results:
                    token.cancel(reason)
            job.message = "Cancelling"
        logger.info(f"Job {job_id} cancellation requested: {reason}")
        return job

    def retry(self, job_id: str) -> Job:
        job = self.get(job_id)
        with job.lock:
            if not (job.status in (JobStatus.failed, JobStatus.cancelled) or job.partial):
                raise NotRetryableError(f"Job {job_id} is {job.status.value} and cannot be retried")
            session_id, platforms, priority = job.session_id, list(job.platforms), job.priority
            options = PackagingOptions.from_dict(job.options.to_dict())
        logger.info(f"Retrying job {job_id}")
        return self.submit(session_id, platforms, options, priority=priority, retry_of=job_id)

    def reprocess(self, ref: Union[str, int]) -> dict:
        """Submission draft rebuilt from a finished job; nothing is started."""
        if isinstance(ref, int):
            history = self.history()
            if not 0 <= ref < len(history):
                raise NotFoundError(f"No finished job at history index {ref}")
            job = history[ref]
        else:
            job = self.get(ref)
        with job.lock:
            if not job.status.terminal:
                raise NotRetryableError(f"Job {job.job_id} is still {job.status.value}")
            return {
                "session_id": job.session_id,
                "platforms": list(job.platforms),
                "options": job.options.to_dict(),
                "priority": job.priority,
                "source_job_id": job.job_id,
            }

    def remove(self, job_id: str) -> None:
        job = self.get(job_id)
        with job.lock:
            if not job.status.terminal:
                raise NotRemovableError(f"Job {job_id} is {job.status.value}; cancel it first")
        with self.lock:
            self.jobs.pop(job_id, None)
        if job.output_dir:
            cleanup_dir(job.output_dir)
        logger.info(f"Job {job_id} removed")

    # queries

    def get(self, job_id: str) -> Job:
        with self.lock:
            job = self.jobs.get(job_id)
        if job is None:
            raise NotFoundError(f"Unknown job: {job_id}")
        return job

    def snapshot(self, job_id: str) -> dict:
        return self.get(job_id).snapshot()

    def list(self, status: Optional[JobStatus] = None, limit: Optional[int] = None) -> list[Job]:
        with self.lock:
            jobs = sorted(self.jobs.values(), key=lambda j: j.created_at, reverse=True)
        if status is not None:
            jobs = [j for j in jobs if j.status == status]
        return jobs[:limit] if limit else jobs

    def history(self, limit: Optional[int] = None) -> list[Job]:
        with self.lock:
            done = [j for j in self.jobs.values() if j.status.terminal]
        done.sort(key=lambda j: j.finished_at or j.created_at, reverse=True)
        return done[:limit] if limit else done

    def stats(self) -> dict:
        with self.lock:
            counts = {s.value: 0 for s in JobStatus}
            for j in self.jobs.values():
                counts[j.status.value] += 1
            executing = len(self._executing)
        return {
            "jobs": counts,
            "queued": self.q.qsize(),
            "executing": executing,
            "workers": len(self.worker_threads),
            "subscribers": self.broadcaster.subscriber_count,
            "circuit_breakers": self.breaker.state(),
        }

    # housekeeping

    def collect_garbage(self) -> list[str]:
        """Drop finished jobs past their TTL or beyond the history limit."""
        cutoff = utcnow() - timedelta(minutes=self.settings.JOB_TTL_MINUTES)
        history = self.history()
        expired = {j.job_id: j for j in history if j.finished_at and j.finished_at < cutoff}
        for j in history[self.settings.HISTORY_LIMIT:]:
            expired[j.job_id] = j
        with self.lock:
            for job_id in expired:
                self.jobs.pop(job_id, None)
        for job in expired.values():
            if job.output_dir:
                cleanup_dir(job.output_dir)
        if expired:
            logger.info(f"Dropped {len(expired)} finished jobs from history")
        return list(expired)

    def _worker_loop(self):
        while not self.stop_event.is_set():
            try:
                _priority, _seq, job_id = self.q.get(timeout=0.5)
            except queue.Empty:
                continue
            try:
                self.start(job_id)
            except NotFoundError:
                # removed while still queued
                pass
            except Exception:
                logger.exception(f"Worker failed on job {job_id}")
            finally:
                self.q.task_done()

    def _gc_loop(self):
        while not self.stop_event.wait(self.settings.GC_INTERVAL_SECONDS):
            try:
                self.collect_garbage()
            except Exception:
                logger.exception("History cleanup failed")

    @staticmethod
    def _write_log(job: Job, text: str):
        if job.log_path:
            with open(job.log_path, "a", encoding="utf-8") as f:
                f.write(text)
