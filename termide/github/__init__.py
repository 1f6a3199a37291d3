from termide.github.backup import BackupResult, StepResult, backup_project
from termide.github.client import GitHubClient, GitHubError, GitHubRepo

__all__ = [
    "BackupResult",
    "GitHubClient",
    "GitHubError",
    "GitHubRepo",
    "StepResult",
    "backup_project",
]
