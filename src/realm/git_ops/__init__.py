"""Git operations: repository discovery and per-session workspace clones."""

from realm.git_ops.utils import find_repo_root, get_remote_url, is_repo, run_git
from realm.git_ops.workspace import provision, teardown

__all__ = [
    "find_repo_root",
    "get_remote_url",
    "is_repo",
    "provision",
    "run_git",
    "teardown",
]
