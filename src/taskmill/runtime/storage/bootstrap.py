from __future__ import annotations

from pathlib import Path


STATE_DIR_NAME = ".taskmill"

STATE_FILES = {
    "ledger": "ledger.yaml",
    "events": "events.jsonl",
    "backlog": "backlog.yaml",
}

STOP_SENTINEL = ".stop-loop"
GITIGNORE_HEADER = "# taskmill runtime data"


def _ensure_gitignored(repo_dir: Path) -> None:
    """Add the state directory to the repository's .gitignore if not already present."""
    gitignore = repo_dir / ".gitignore"
    entry = f"{STATE_DIR_NAME}/"
    if gitignore.exists():
        content = gitignore.read_text(encoding="utf-8")
        existing = {line.strip() for line in content.splitlines()}
        if entry in existing or entry.rstrip("/") in existing:
            return
        if content and not content.endswith("\n"):
            content += "\n"
        if GITIGNORE_HEADER not in content:
            content += f"\n{GITIGNORE_HEADER}\n"
        content += f"{entry}\n"
        gitignore.write_text(content, encoding="utf-8")
    else:
        gitignore.write_text(f"{GITIGNORE_HEADER}\n{entry}\n", encoding="utf-8")


def ensure_state_root(repo_dir: Path) -> Path:
    state_root = repo_dir / STATE_DIR_NAME
    state_root.mkdir(parents=True, exist_ok=True)
    _ensure_gitignored(repo_dir)

    events = state_root / STATE_FILES["events"]
    if not events.exists():
        events.touch()

    return state_root
