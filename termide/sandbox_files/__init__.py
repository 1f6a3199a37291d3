from termide.sandbox_files.policy import (
    DEFAULT_PROJECT,
    project_root,
    resolve,
    sanitize_project_id,
)

__all__ = [
    "DEFAULT_PROJECT",
    "project_root",
    "resolve",
    "sanitize_project_id",
]
