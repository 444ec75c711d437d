from dataclasses import dataclass
from enum import Enum

JOBS_WRITE = "jobs:write"
JOBS_LEASE = "jobs:lease"
JOBS_REPORT = "jobs:report"
KEYWORDS_WRITE = "keywords:write"
ANALYTICS_READ = "analytics:read"
ANALYTICS_WRITE = "analytics:write"

MACHINE_SCOPES = frozenset({JOBS_LEASE, JOBS_REPORT, ANALYTICS_WRITE})


class PrincipalType(str, Enum):
    HUMAN = "human"
    MACHINE = "machine"


@dataclass(slots=True)
class Principal:
    """An authenticated caller.

    For humans ``subject`` is the Supabase user id and owns keywords and jobs;
    for machines it is the module id recorded as the job's ``updated_by``.
    """

    principal_type: PrincipalType
    subject: str
    scopes: set[str]
    role: str | None = None

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionError(f"missing required scopes: {sorted(missing)}")
