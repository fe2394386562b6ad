# worker/payloads.py

"""
Typed views over `script_jobs.input`.

A payload is either a `ManualSubmission` (whatever the caller posted, passed to the
script untouched) or an `AutoNotebookScript` produced by the derived-job enqueuer.
Unknown `mode` values decode as manual submissions.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Union

from utils.sandbox.python_sandbox import SandboxResult

AUTO_NOTEBOOK_SCRIPT_MODE = "auto_notebook_script"
MAX_CONTEXT_SNIPPETS = 8
MAX_SNIPPET_CHARS = 1200


@dataclass
class ContextSnippet:
    source_id: str
    filename: str
    snippet: str

    def to_json(self) -> Dict[str, Any]:
        return {"sourceId": self.source_id, "filename": self.filename, "snippet": self.snippet}


@dataclass
class ManualSubmission:
    fields: Dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> Dict[str, Any]:
        return dict(self.fields)


@dataclass
class AutoNotebookScript:
    script_source_id: str
    trigger_source_id: str
    notebook_context: List[ContextSnippet] = field(default_factory=list)

    def to_json(self) -> Dict[str, Any]:
        return {
            "mode": AUTO_NOTEBOOK_SCRIPT_MODE,
            "scriptSourceId": self.script_source_id,
            "triggerSourceId": self.trigger_source_id,
            "notebookContext": [s.to_json() for s in self.notebook_context[:MAX_CONTEXT_SNIPPETS]],
        }


JobPayload = Union[ManualSubmission, AutoNotebookScript]


def decode_job_input(raw: Any) -> JobPayload:
    """Decode a stored `input` document into its payload variant"""
    if not isinstance(raw, dict):
        return ManualSubmission()
    if raw.get("mode") != AUTO_NOTEBOOK_SCRIPT_MODE:
        return ManualSubmission(dict(raw))

    snippets = []
    for item in raw.get("notebookContext") or []:
        if not isinstance(item, dict):
            continue
        snippets.append(ContextSnippet(
            source_id=str(item.get("sourceId") or ""),
            filename=str(item.get("filename") or ""),
            snippet=str(item.get("snippet") or "")[:MAX_SNIPPET_CHARS],
        ))
    return AutoNotebookScript(
        script_source_id=str(raw.get("scriptSourceId") or ""),
        trigger_source_id=str(raw.get("triggerSourceId") or ""),
        notebook_context=snippets,
    )


__all__ = [
    "AUTO_NOTEBOOK_SCRIPT_MODE",
    "AutoNotebookScript",
    "ContextSnippet",
    "JobPayload",
    "ManualSubmission",
    "SandboxResult",
    "decode_job_input",
]
