"""Parallel job fan-out over the shards of a speech-type partition."""

from __future__ import annotations

import logging
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Callable, TypeVar

from .errors import ShardIntegrityError
from .tables import read_utt2spk

logger = logging.getLogger(__name__)

T = TypeVar("T")


class JobFanout:
    """Run ``job_fn(1..num_jobs)`` with at most ``max_jobs_run`` running at once.

    Every job must write only job-indexed files. The first failure cancels
    the jobs that have not started yet and is re-raised once the running ones
    have finished.
    """

    def __init__(self, max_jobs_run: int):
        if max_jobs_run < 1:
            raise ValueError("max_jobs_run must be >= 1")
        self.max_jobs_run = max_jobs_run

    def run(self, num_jobs: int, job_fn: Callable[[int], T], *, name: str = "job") -> list[T]:
        if num_jobs < 1:
            raise ValueError(f"{name}: num_jobs must be >= 1, got {num_jobs}")

        workers = min(self.max_jobs_run, num_jobs)
        logger.debug("%s: %d jobs, %d concurrent", name, num_jobs, workers)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=name) as pool:
            futures: dict[Future[T], int] = {pool.submit(job_fn, job): job for job in range(1, num_jobs + 1)}
            done, pending = wait(futures, return_when=FIRST_EXCEPTION)
            failed = [fut for fut in done if fut.exception() is not None]
            if failed:
                for fut in pending:
                    fut.cancel()
                wait(pending)
                first = min(failed, key=lambda fut: futures[fut])
                logger.error("%s: job %d of %d failed", name, futures[first], num_jobs)
                raise first.exception()  # type: ignore[misc]
        return [fut.result() for fut in sorted(futures, key=futures.__getitem__)]


def read_num_jobs(decode_dir: Path) -> int:
    path = decode_dir / "num_jobs"
    try:
        return int(path.read_text(encoding="utf-8").strip())
    except FileNotFoundError:
        raise ShardIntegrityError(f"{path} is missing; was the decode stage run?") from None
    except ValueError:
        raise ShardIntegrityError(f"{path} does not hold a job count") from None


def check_shard_partition(data_dir: Path, num_jobs: int) -> int:
    """Verify that ``split<num_jobs>`` shards partition ``data_dir/utt2spk``.

    Returns the number of utterances covered.
    """

    full = {utt.utterance for utt in read_utt2spk(data_dir / "utt2spk")}
    seen: dict[str, int] = {}
    for job in range(1, num_jobs + 1):
        shard_path = data_dir / f"split{num_jobs}" / str(job) / "utt2spk"
        if not shard_path.exists():
            raise ShardIntegrityError(f"shard {job} of {num_jobs} missing: {shard_path}")
        for utt in read_utt2spk(shard_path):
            if utt.utterance in seen:
                raise ShardIntegrityError(
                    f"utterance {utt.utterance} is in shards {seen[utt.utterance]} and {job}"
                )
            seen[utt.utterance] = job

    missing = full.difference(seen)
    extra = set(seen).difference(full)
    if missing or extra:
        raise ShardIntegrityError(
            f"{data_dir}: shards do not match the partition "
            f"({len(missing)} missing, {len(extra)} unexpected)"
        )
    return len(full)


__all__ = ["JobFanout", "check_shard_partition", "read_num_jobs"]
