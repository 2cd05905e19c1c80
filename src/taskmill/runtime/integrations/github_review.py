"""``ReviewSystem`` backed by the GitHub CLI (``gh``)."""

from __future__ import annotations

import json
import logging
import subprocess
from pathlib import Path
from typing import Any, Optional

from ...errors import ExternalCallError
from ..domain.models import CheckResult, ReviewStatus
from ..orchestrator.interfaces import REVIEW_MERGED, REVIEW_OPEN

logger = logging.getLogger(__name__)

_STATUS_FIELDS = "state,baseRefName,statusCheckRollup"


def parse_review_status(data: dict[str, Any]) -> ReviewStatus:
    """Convert ``gh pr view --json state,baseRefName,statusCheckRollup`` output.

    Check runs report ``name``/``conclusion``; legacy commit statuses report
    ``context``/``state``. A check with neither conclusion nor state is still
    running and keeps ``conclusion=None``.
    """
    checks: list[CheckResult] = []
    for item in data.get("statusCheckRollup") or []:
        if not isinstance(item, dict):
            continue
        name = str(item.get("name") or item.get("context") or "")
        conclusion = item.get("conclusion") or item.get("state") or None
        checks.append(CheckResult(name=name, conclusion=str(conclusion).upper() if conclusion else None))
    return ReviewStatus(
        state=str(data.get("state") or "").upper(),
        target_ref=str(data.get("baseRefName") or ""),
        checks=tuple(checks),
    )


class GitHubReviewSystem:
    """Look up pull requests with ``gh`` from inside the repository."""

    def __init__(self, repo_dir: Path, *, gh: str = "gh", timeout: float = 60.0) -> None:
        self.repo_dir = repo_dir
        self.gh = gh
        self.timeout = timeout

    def _gh_json(self, *args: str) -> Any:
        command = [self.gh, *args]
        try:
            result = subprocess.run(
                command,
                cwd=self.repo_dir,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise ExternalCallError(f"Failed to run {' '.join(command)}: {exc}", command=command) from exc
        if result.returncode != 0:
            raise ExternalCallError(
                f"{' '.join(command)} exited with {result.returncode}: {result.stderr.strip()}",
                command=command,
                stderr=result.stderr,
            )
        try:
            return json.loads(result.stdout or "null")
        except json.JSONDecodeError as exc:
            raise ExternalCallError(f"Unparseable output from {' '.join(command)}", command=command) from exc

    def find_open_request_for_branch(self, branch: str) -> Optional[str]:
        """Return the open or merged pull request whose head is ``branch``.

        Closed pull requests are skipped: a task that was abandoned and later
        relaunched on the same branch must not be matched to its old review.
        """
        rows = self._gh_json("pr", "list", "--head", branch, "--state", "all", "--json", "number,state")
        if not isinstance(rows, list):
            return None
        for row in rows:
            if not isinstance(row, dict) or row.get("number") is None:
                continue
            if str(row.get("state") or "").upper() in (REVIEW_OPEN, REVIEW_MERGED):
                return str(row["number"])
            logger.debug("Skipping %s pull request #%s for %s", row.get("state"), row["number"], branch)
        return None

    def get_request_status(self, ref: str) -> ReviewStatus:
        data = self._gh_json("pr", "view", str(ref), "--json", _STATUS_FIELDS)
        if not isinstance(data, dict):
            raise ExternalCallError(f"Unexpected gh pr view payload for {ref}")
        status = parse_review_status(data)
        logger.debug("PR %s: state=%s base=%s checks=%d", ref, status.state, status.target_ref, len(status.checks))
        return status
