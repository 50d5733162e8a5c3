"""arq worker settings module.

Import path for arq CLI: arq racestay.workers.settings.WorkerSettings
"""

from __future__ import annotations

from racestay.workers.deadlines import WorkerSettings

__all__ = ["WorkerSettings"]
