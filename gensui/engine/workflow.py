"""Workflow definitions and the YAML/JSON loader.

Example file (``.gensui/workflows.yaml``)::

    default_workflow: fix-issue
    workflows:
      - name: fix-issue
        description: Analyze, implement, and verify an issue
        steps:
          - name: analyze
            agent:
              prompt: |
                Read issue {{issue}} and write a plan to PLAN.md.
              model: sonnet
              permission_mode: plan
              allowed_tools: [Read, Grep, Glob]
          - name: implement
            agent:
              prompt: Implement PLAN.md on branch {{branch}}.
              extra_args: ["--add-dir", "{{workdir}}"]
          - name: test
            command: pytest -q

A step has exactly one of ``command`` or ``agent`` (``claude`` is accepted
as an older spelling of ``agent``). JSON files load through the same path
since the YAML parser accepts them.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

from .errors import WorkflowConfigError

logger = logging.getLogger(__name__)

DEFAULT_PERMISSION_MODE = "bypassPermissions"
FREE_PROMPT_PERMISSION_MODE = "plan"


@dataclass
class AgentStep:
    """Headless agent invocation parameters for one step."""
    prompt: str
    model: str | None = None
    permission_mode: str | None = None
    allowed_tools: list[str] | None = None
    extra_args: list[str] = field(default_factory=list)

    @property
    def effective_permission_mode(self) -> str:
        return self.permission_mode or DEFAULT_PERMISSION_MODE


@dataclass
class WorkflowStep:
    name: str
    command: str | None = None
    agent: AgentStep | None = None
    description: str | None = None

    def __post_init__(self) -> None:
        if (self.command is None) == (self.agent is None):
            raise ValueError(
                f"Step '{self.name}' must define exactly one of command or agent"
            )

    @property
    def is_agent(self) -> bool:
        return self.agent is not None


@dataclass
class Workflow:
    name: str
    steps: list[WorkflowStep]
    description: str | None = None


@dataclass
class WorkflowConfig:
    """The set of workflows an operator can choose from."""
    workflows: list[Workflow]
    default_workflow: str | None = None

    def names(self) -> list[str]:
        return [wf.name for wf in self.workflows]

    def get(self, name: str) -> Workflow | None:
        for wf in self.workflows:
            if wf.name == name:
                return wf
        return None

    def default(self) -> Workflow:
        if self.default_workflow:
            wf = self.get(self.default_workflow)
            if wf is not None:
                return wf
        return self.workflows[0]

    def next_after(self, name: str | None) -> Workflow:
        """Return the workflow following ``name``, wrapping around."""
        names = self.names()
        if name not in names:
            return self.workflows[0]
        return self.workflows[(names.index(name) + 1) % len(names)]


def default_workflow() -> Workflow:
    return Workflow(
        name="default",
        description="Analyze, implement, and test",
        steps=[
            WorkflowStep(
                name="analyze",
                command="echo 'Analyzing issue context'",
                description="Review the issue and the surrounding code",
            ),
            WorkflowStep(
                name="implement",
                command="echo 'Implementing changes'",
                description="Apply the code changes",
            ),
            WorkflowStep(
                name="test",
                command="echo 'Running tests'",
                description="Run the test suite",
            ),
        ],
    )


def default_config() -> WorkflowConfig:
    return WorkflowConfig(workflows=[default_workflow()], default_workflow="default")


def free_prompt_workflow(prompt: str, index: int = 1) -> Workflow:
    """Single agent step running an operator-supplied prompt."""
    return Workflow(
        name=f"free-prompt-{index}",
        description="Operator prompt",
        steps=[
            WorkflowStep(
                name="prompt",
                agent=AgentStep(
                    prompt=prompt,
                    permission_mode=FREE_PROMPT_PERMISSION_MODE,
                ),
            )
        ],
    )


def continuation_step(
    index: int, prompt: str, permission_mode: str | None = None,
) -> WorkflowStep:
    return WorkflowStep(
        name=f"continue-{index}",
        agent=AgentStep(
            prompt=prompt,
            permission_mode=permission_mode or FREE_PROMPT_PERMISSION_MODE,
        ),
        description="Operator follow-up prompt",
    )


def render_template(template: str, context: Mapping[str, str]) -> str:
    """Replace ``{{key}}`` placeholders. Unknown placeholders are left as-is."""
    rendered = template
    for key, value in context.items():
        rendered = rendered.replace("{{" + key + "}}", value)
    return rendered


# ── Dict conversion (shared by the loader and persistence) ──


def _parse_agent_step(raw: Mapping[str, Any]) -> AgentStep:
    prompt = raw.get("prompt")
    if not isinstance(prompt, str) or not prompt.strip():
        raise ValueError("agent step requires a non-empty prompt")
    allowed = raw.get("allowed_tools")
    if allowed is not None and not isinstance(allowed, list):
        raise ValueError("allowed_tools must be a list")
    extra = raw.get("extra_args") or []
    if not isinstance(extra, list):
        raise ValueError("extra_args must be a list")
    return AgentStep(
        prompt=prompt,
        model=raw.get("model"),
        permission_mode=raw.get("permission_mode"),
        allowed_tools=[str(t) for t in allowed] if allowed is not None else None,
        extra_args=[str(a) for a in extra],
    )


def step_from_dict(raw: Mapping[str, Any]) -> WorkflowStep:
    name = raw.get("name")
    if not isinstance(name, str) or not name:
        raise ValueError("step requires a name")
    agent_raw = raw.get("agent", raw.get("claude"))
    agent = _parse_agent_step(agent_raw) if agent_raw is not None else None
    command = raw.get("command")
    if command is not None and not isinstance(command, str):
        raise ValueError(f"step '{name}' command must be a string")
    return WorkflowStep(
        name=name,
        command=command,
        agent=agent,
        description=raw.get("description"),
    )


def step_to_dict(step: WorkflowStep) -> dict[str, Any]:
    data: dict[str, Any] = {"name": step.name}
    if step.description:
        data["description"] = step.description
    if step.command is not None:
        data["command"] = step.command
    if step.agent is not None:
        data["agent"] = {
            "prompt": step.agent.prompt,
            "model": step.agent.model,
            "permission_mode": step.agent.permission_mode,
            "allowed_tools": step.agent.allowed_tools,
            "extra_args": list(step.agent.extra_args),
        }
    return data


def workflow_from_dict(raw: Mapping[str, Any]) -> Workflow:
    name = raw.get("name")
    if not isinstance(name, str) or not name:
        raise ValueError("workflow requires a name")
    steps = [step_from_dict(s) for s in raw.get("steps") or []]
    return Workflow(name=name, steps=steps, description=raw.get("description"))


def workflow_to_dict(workflow: Workflow) -> dict[str, Any]:
    return {
        "name": workflow.name,
        "description": workflow.description,
        "steps": [step_to_dict(s) for s in workflow.steps],
    }


def load_workflow_config(path: str | Path | None) -> WorkflowConfig:
    """Load workflows from ``path``.

    A missing file, an empty file, or a file with no usable workflows
    yields the built-in default. Individual invalid workflows are logged
    and skipped. A file that cannot be parsed raises WorkflowConfigError.
    """
    if path is None:
        return default_config()
    path = Path(path)
    if not path.exists():
        logger.info("load_workflow_config: %s not found; using default workflow", path)
        return default_config()

    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        logger.error("load_workflow_config: parse error in %s: %s", path, exc)
        raise WorkflowConfigError(str(path), str(exc)) from exc
    except OSError as exc:
        raise WorkflowConfigError(str(path), str(exc)) from exc

    if not isinstance(raw, dict):
        raise WorkflowConfigError(str(path), "top level must be a mapping")

    workflows: list[Workflow] = []
    for entry in raw.get("workflows") or []:
        try:
            wf = workflow_from_dict(entry)
        except (ValueError, TypeError, AttributeError) as exc:
            logger.warning("load_workflow_config: skipping invalid workflow in %s: %s", path, exc)
            continue
        if not wf.steps:
            logger.warning("load_workflow_config: workflow '%s' has no steps; skipping", wf.name)
            continue
        workflows.append(wf)

    if not workflows:
        logger.info("load_workflow_config: %s defines no workflows; using default", path)
        return default_config()

    config = WorkflowConfig(
        workflows=workflows,
        default_workflow=raw.get("default_workflow"),
    )
    logger.info(
        "load_workflow_config: loaded %d workflow(s) from %s (default=%s)",
        len(workflows), path, config.default().name,
    )
    return config
