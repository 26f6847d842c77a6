"""Template context assembly.

``build`` merges three layers, later layers overriding earlier ones:

    1. tenant constants
    2. session-derived values, then the session's variable mapping
    3. one-shot ``extra`` values supplied by the running action/turn

The builder is pure: no I/O, no clock reads, and every layer is deep
copied so templates and expressions can never reach back into the live
session. It is rebuilt before every action because variables change
mid-turn.
"""

import copy
from typing import Any, Dict, List, Mapping, Optional

from src.domain.models.session import Session
from src.domain.models.tenant import TenantConfig


class TemplateContextBuilder:
    """Builds rendering contexts for one tenant."""

    def __init__(self, tenant: TenantConfig):
        self.tenant = tenant

    def missing_fields(self, session: Session) -> List[str]:
        """Required fields of the session type not yet collected."""
        required = self.tenant.session_type(session.session_type).required_fields
        return [
            name
            for name in required
            if session.session_data.get(name) in (None, "", [], {})
        ]

    def derived(self, session: Session) -> Dict[str, Any]:
        return {
            "ref_code": session.ref_code,
            "tenant_id": session.tenant_id,
            "tenant_name": self.tenant.display_name or session.tenant_id,
            "session_type": session.session_type,
            "mode_tags": list(session.mode_tags),
            "session_data": session.session_data,
            "reports": session.reports,
            "delivery": session.delivery.markers,
            "metrics": session.metrics.summary(),
            "missing_fields": self.missing_fields(session),
            "thread_length": len(session.thread),
        }

    def build(
        self, session: Session, extra: Optional[Mapping[str, Any]] = None
    ) -> Dict[str, Any]:
        context: Dict[str, Any] = {}
        context.update(copy.deepcopy(self.tenant.constants))
        context.update(copy.deepcopy(self.derived(session)))
        context.update(copy.deepcopy(session.variables))
        if extra:
            context.update(copy.deepcopy(dict(extra)))
        return context
