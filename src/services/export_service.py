"""
Export service for converting session transcripts to various formats.

Supports export to:
- JSON: Full session document with the raw thread and metrics
- Markdown: Human-readable transcript
- CSV: One row per thread item, for spreadsheet analysis
"""

import csv
import json
from datetime import datetime, timezone
from io import StringIO
from typing import Any, Dict, List, Optional

import structlog

from src.core.exceptions import SessionNotFoundError, ValidationError
from src.domain.models.session import Session
from src.domain.models.thread import (
    AssistantItem,
    FlaggedItem,
    FormItem,
    NotificationItem,
    ReportItem,
    SystemItem,
    ThreadItem,
    ToolCallItem,
    ToolOutputItem,
    UserItem,
)
from src.services.protocols import ISessionStore

log = structlog.get_logger(__name__)

EXPORT_FORMATS = ("json", "markdown", "md", "csv")


def item_text(item: ThreadItem) -> str:
    """Display text of a thread item."""
    match item:
        case SystemItem() | UserItem() | AssistantItem() | ToolOutputItem():
            return item.content or item.message.content or ""
        case ToolCallItem():
            calls = ", ".join(f"{c.name}({c.arguments})" for c in item.message.tool_calls)
            return item.message.content or calls
        case FormItem():
            return item.content or item.form_key
        case ReportItem() | NotificationItem() | FlaggedItem():
            return item.content


class ExportService:
    """
    Service for exporting session transcripts.

    Usage:
        service = ExportService(store)
        json_str = await service.export_session(ref_code, "json")
        md_str = await service.export_session(ref_code, "markdown")
    """

    def __init__(self, store: ISessionStore, live_lookup=None):
        """
        Args:
            store: Session store
            live_lookup: Optional callable returning the in-memory session for
                a ref_code (or None), so exports include unsaved evictions
        """
        self.store = store
        self.live_lookup = live_lookup

    async def export_session(self, ref_code: str, format: str = "json") -> str:
        """
        Export a session transcript.

        Raises:
            ValidationError: Unsupported format
            SessionNotFoundError: Unknown ref_code
        """
        bound_log = log.bind(ref_code=ref_code, format=format)
        bound_log.info("export_session_started")

        fmt = format.lower()
        if fmt not in EXPORT_FORMATS:
            raise ValidationError(f"Unsupported export format: {format}")

        session = await self._load(ref_code)
        data = self.collect(session)

        if fmt == "json":
            result = self._export_json(data)
        elif fmt in ("markdown", "md"):
            result = self._export_markdown(data)
        else:
            result = self._export_csv(data)

        bound_log.info("export_session_complete", output_length=len(result))
        return result

    async def _load(self, ref_code: str) -> Session:
        session: Optional[Session] = self.live_lookup(ref_code) if self.live_lookup else None
        if session is None:
            session = await self.store.load(ref_code)
        if session is None:
            raise SessionNotFoundError(f"Session {ref_code} not found")
        return session

    @staticmethod
    def collect(session: Session) -> Dict[str, Any]:
        return {
            "metadata": {
                "ref_code": session.ref_code,
                "tenant_id": session.tenant_id,
                "session_type": session.session_type,
                "status": session.status.value,
                "created_at": session.created_at.isoformat(),
                "updated_at": session.updated_at.isoformat(),
                "exported_at": datetime.now(timezone.utc).isoformat(),
            },
            "session_data": session.session_data,
            "reports": session.reports,
            "metrics": session.metrics.summary(),
            "thread": [
                {"index": i, **item.model_dump(mode="json")}
                for i, item in enumerate(session.thread)
            ],
            "_items": list(session.thread),
        }

    def _export_json(self, data: Dict[str, Any]) -> str:
        payload = {k: v for k, v in data.items() if not k.startswith("_")}
        return json.dumps(payload, indent=2, default=str)

    def _export_markdown(self, data: Dict[str, Any]) -> str:
        """Export to human-readable Markdown format."""
        lines: List[str] = []
        meta = data["metadata"]
        metrics = data["metrics"]

        lines.append("# Session Transcript")
        lines.append("")
        lines.append(f"**Reference:** `{meta['ref_code']}`")
        lines.append(f"**Tenant:** {meta['tenant_id']}")
        lines.append(f"**Type:** {meta['session_type']}")
        lines.append(f"**Status:** {meta['status']}")
        lines.append(f"**Created:** {meta['created_at']}")
        lines.append("")

        lines.append("## Statistics")
        lines.append("")
        lines.append(f"- **User messages:** {metrics['user_messages']}")
        lines.append(f"- **Assistant messages:** {metrics['assistant_messages']}")
        lines.append(f"- **Tool calls:** {metrics['tool_calls']}")
        lines.append(f"- **Flagged messages:** {metrics['flagged_messages']}")
        lines.append(f"- **Tokens:** {metrics['total_tokens']}")
        lines.append("")

        lines.append("## Conversation")
        lines.append("")
        for index, item in enumerate(data["_items"]):
            heading = item.meta_role.replace("_", " ").title()
            markers = []
            if item.disabled:
                markers.append("disabled")
            if getattr(item, "submitted", False):
                markers.append("submitted")
            suffix = f" ({', '.join(markers)})" if markers else ""
            lines.append(f"### {index}. {heading}{suffix}")
            lines.append("")
            lines.append(item_text(item))
            if isinstance(item, FlaggedItem):
                categories = ", ".join(item.verdict.get("categories", []))
                lines.append("")
                lines.append(f"*Flagged: {categories or 'unspecified'}*")
            if isinstance(item, ReportItem) and item.buttons:
                lines.append("")
                lines.append("Buttons: " + ", ".join(b.label for b in item.buttons))
            lines.append("")

        if data["reports"]:
            lines.append("## Reports")
            lines.append("")
            for key, report in data["reports"].items():
                lines.append(f"- **{key}:** `{json.dumps(report, default=str)}`")
            lines.append("")

        lines.append("---")
        lines.append(f"*Exported on {meta['exported_at']}*")
        lines.append("")
        return "\n".join(lines)

    def _export_csv(self, data: Dict[str, Any]) -> str:
        output = StringIO()
        writer = csv.DictWriter(
            output,
            fieldnames=["index", "meta_role", "timestamp", "disabled", "text"],
        )
        writer.writeheader()
        for index, item in enumerate(data["_items"]):
            writer.writerow(
                {
                    "index": index,
                    "meta_role": item.meta_role,
                    "timestamp": item.timestamp.isoformat(),
                    "disabled": item.disabled,
                    "text": item_text(item),
                }
            )
        return output.getvalue()
