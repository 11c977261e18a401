"""Resume checkpoints for interrupted review runs."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from ru_review.review.contracts import (
    Checkpoint,
    load_state_document,
    read_checkpoint,
    utc_timestamp,
    write_json,
)
from ru_review.review.errors import (
    CheckpointMismatchError,
    ResumeChoiceRequiredError,
    StaleStateError,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ResumeDecision:
    """Which repositories a run should process, and under which run id."""

    run_id: str
    pending: list[str]
    completed: list[str] = field(default_factory=list)
    resumed: bool = False
    discarded_run_id: str | None = None


class CheckpointManager:
    """Owns ``review/review-checkpoint.json``."""

    def __init__(self, state_dir: Path) -> None:
        self.path = state_dir / "review" / "review-checkpoint.json"

    def save(self, checkpoint: Checkpoint) -> None:
        checkpoint.timestamp = utc_timestamp()
        write_json(self.path, checkpoint.to_payload())

    def load(self) -> Checkpoint | None:
        """Return the checkpoint, ``None`` when absent; corrupt files raise ``StaleStateError``."""

        if not self.path.exists():
            return None
        payload = load_state_document(self.path)
        try:
            return read_checkpoint(payload)
        except TypeError as error:
            raise StaleStateError(f"Unexpected checkpoint shape in {self.path}: {error}") from error

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)

    def resolve(  # noqa: PLR0913
        self,
        *,
        repo_ids: list[str],
        config_hash: str,
        new_run_id: str,
        resume: bool,
        restart: bool,
        force_resume: bool = False,
    ) -> ResumeDecision:
        """Decide resume vs. fresh start; never guesses when a choice is required.

        With ``restart`` any checkpoint is discarded. With ``resume`` a matching
        checkpoint yields exactly its pending repos under its run id, and a
        mismatched one raises ``CheckpointMismatchError`` unless ``force_resume``.
        An incomplete checkpoint with neither flag raises ``ResumeChoiceRequiredError``.
        """

        fresh = ResumeDecision(run_id=new_run_id, pending=list(repo_ids))
        if restart:
            if self.path.exists():
                logger.info("Discarding checkpoint %s on restart", self.path)
                try:
                    previous = self.load()
                except StaleStateError:
                    previous = None
                if previous is not None:
                    fresh.discarded_run_id = previous.run_id
            self.clear()
            return fresh

        checkpoint = self.load()
        if checkpoint is None or checkpoint.is_complete:
            if resume:
                logger.info("No incomplete checkpoint to resume; starting fresh")
            return fresh

        if not resume:
            raise ResumeChoiceRequiredError(
                f"Incomplete review run {checkpoint.run_id} has "
                f"{len(checkpoint.pending_repos)} pending repos. "
                "Pass --resume to continue it or --restart to discard it.",
            )

        if checkpoint.config_hash != config_hash and not force_resume:
            raise CheckpointMismatchError(
                f"Repo list changed since run {checkpoint.run_id} was checkpointed "
                f"({checkpoint.config_hash[:12]} != {config_hash[:12]}). "
                "Pass --restart to start over or --force-resume to continue anyway.",
            )

        known = set(repo_ids)
        pending = [repo_id for repo_id in checkpoint.pending_repos if repo_id in known]
        dropped = [repo_id for repo_id in checkpoint.pending_repos if repo_id not in known]
        if dropped:
            logger.warning("Skipping %d checkpointed repos no longer configured", len(dropped))
        return ResumeDecision(
            run_id=checkpoint.run_id,
            pending=pending,
            completed=list(checkpoint.completed_repos),
            resumed=True,
        )

    def status(self) -> dict[str, object]:
        """Checkpoint summary for operator reports."""

        try:
            checkpoint = self.load()
        except StaleStateError as error:
            return {"exists": True, "error": str(error)}
        if checkpoint is None:
            return {"exists": False}
        payload = checkpoint.to_payload()
        payload["exists"] = True
        return payload
