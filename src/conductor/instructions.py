from __future__ import annotations

import json
from typing import Literal

from conductor.tasks import TaskMeta

WorkerRole = Literal["context", "implementation"]

CONTEXT_INSTRUCTION = """\
Gather context for task: {name}

Task file: {path}

Read the task file and create a comprehensive "Context Manifest" section. Document:
- Current system state
- Relevant files and patterns
- Dependencies and integration points
- Technical constraints

After gathering context, update the task file frontmatter: context_gathered: true"""

IMPLEMENTATION_INSTRUCTION = """\
Implement task: {name}

Task file: {path}

Read the task file and implement all todos. Check off each todo when it is done.
context_gathered is true and the Context Manifest section describes the relevant
system state; follow it."""


def build_instruction(
    role: WorkerRole,
    *,
    task_path: str,
    task_text: str,
    meta: TaskMeta,
    branch: str,
) -> str:
    template = CONTEXT_INSTRUCTION if role == "context" else IMPLEMENTATION_INSTRUCTION
    header = template.format(name=meta.name or task_path, path=task_path)
    metadata = {
        "priority": meta.priority,
        "leverage": meta.leverage,
        "depends_on": list(meta.depends_on),
        "context_gathered": meta.context_gathered,
        "status": meta.status,
        "branch": branch,
    }
    return (
        f"{header}\n\n"
        f"Task metadata:\n{json.dumps(metadata, ensure_ascii=False, indent=2)}\n\n"
        f"Task file content:\n{task_text.rstrip()}\n"
    )
