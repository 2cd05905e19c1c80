"""Default collaborator adapters shipped with taskmill."""

from .file_tasks import FileTaskSource
from .github_review import GitHubReviewSystem, parse_review_status

__all__ = ["FileTaskSource", "GitHubReviewSystem", "parse_review_status"]
