"""Task templates: the fixed, ordered step sequence behind each task type."""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .models import AgentStep

logger = logging.getLogger(__name__)


class _FormatParams(dict):
    """Leave unknown placeholders in place instead of raising KeyError."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def _render(text: str, params: dict[str, Any]) -> str:
    try:
        return text.format_map(_FormatParams(params))
    except (ValueError, IndexError):
        return text


@dataclass(frozen=True)
class StepTemplate:
    """Definition of one step; ``max_retries=None`` defers to the configured default."""

    id: str
    name: str
    action: str
    description: str = ""
    params: dict[str, Any] = field(default_factory=dict)
    max_retries: int | None = None

    def build(self, task_params: dict[str, Any], default_max_retries: int = 0) -> AgentStep:
        return AgentStep(
            id=self.id,
            name=self.name,
            description=_render(self.description, task_params),
            action=self.action,
            params=dict(self.params),
            max_retries=self.max_retries if self.max_retries is not None else default_max_retries,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id, "name": self.name, "action": self.action}
        if self.description:
            data["description"] = self.description
        if self.params:
            data["params"] = dict(self.params)
        if self.max_retries is not None:
            data["max_retries"] = self.max_retries
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StepTemplate":
        max_retries = data.get("max_retries")
        if max_retries is not None and int(max_retries) < 0:
            raise ValueError(f"max_retries must be >= 0 for step {data.get('id')!r}")
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            action=str(data["action"]),
            description=str(data.get("description", "")),
            params=dict(data.get("params") or {}),
            max_retries=int(max_retries) if max_retries is not None else None,
        )


@dataclass(frozen=True)
class TaskTemplate:
    """A task type: description pattern plus ordered steps."""

    type: str
    description: str
    steps: tuple[StepTemplate, ...]
    defaults: dict[str, Any] = field(default_factory=dict)

    def describe(self, params: dict[str, Any]) -> str:
        return _render(self.description, {**self.defaults, **params})

    def build_steps(self, params: dict[str, Any], default_max_retries: int = 0) -> list[AgentStep]:
        merged = {**self.defaults, **params}
        return [step.build(merged, default_max_retries) for step in self.steps]

    @property
    def actions(self) -> list[str]:
        return [step.action for step in self.steps]

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type, "description": self.description}
        if self.defaults:
            data["defaults"] = dict(self.defaults)
        data["steps"] = [step.to_dict() for step in self.steps]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskTemplate":
        steps = tuple(StepTemplate.from_dict(s) for s in data.get("steps") or [])
        if not steps:
            raise ValueError(f"Task template {data.get('type')!r} declares no steps")
        step_ids = [s.id for s in steps]
        if len(set(step_ids)) != len(step_ids):
            raise ValueError(f"Task template {data.get('type')!r} has duplicate step ids")
        return cls(
            type=str(data["type"]),
            description=str(data.get("description", data["type"])),
            steps=steps,
            defaults=dict(data.get("defaults") or {}),
        )


def _step(id: str, name: str, description: str, action: str, params: dict[str, Any] | None = None) -> StepTemplate:
    return StepTemplate(id=id, name=name, description=description, action=action, params=params or {})


BUILTIN_TEMPLATES: tuple[TaskTemplate, ...] = (
    TaskTemplate(
        type="analyze-10k",
        description="Analyze 10-K filing for {ticker}",
        defaults={"ticker": "company"},
        steps=(
            _step("step_1", "Fetch Latest 10-K", "Download latest 10-K filing for {ticker}", "fetch_filing", {"formType": "10-K"}),
            _step(
                "step_2",
                "Extract Financial Data",
                "Parse income statement, balance sheet, cash flows",
                "extract_financials",
                {"sections": ["income_statement", "balance_sheet", "cash_flow"]},
            ),
            _step("step_3", "Calculate Owner Earnings", "Build owner earnings bridge with adjustments", "calculate_owner_earnings"),
            _step(
                "step_4",
                "Identify Key Metrics",
                "Calculate ROIC, FCF yield, margins",
                "calculate_metrics",
                {"metrics": ["roic", "fcf_yield", "margins", "growth_rates"]},
            ),
            _step("step_5", "Extract MD&A Insights", "Summarize management discussion and analysis", "extract_mda"),
            _step(
                "step_6",
                "Flag Red Flags",
                "Identify accounting concerns and risks",
                "identify_red_flags",
                {"categories": ["accounting", "governance", "operations"]},
            ),
            _step("step_7", "Generate Summary", "Create comprehensive analysis summary", "generate_summary"),
        ),
    ),
    TaskTemplate(
        type="build-dcf-model",
        description="Build DCF valuation model",
        steps=(
            _step("step_1", "Load Historical Financials", "Gather 5 years of financial data", "load_financials", {"years": 5}),
            _step("step_2", "Project Revenue", "Forecast revenue growth for 10 years", "project_revenue", {"years": 10}),
            _step("step_3", "Project Margins", "Forecast operating and profit margins", "project_margins"),
            _step("step_4", "Calculate WACC", "Determine weighted average cost of capital", "calculate_wacc"),
            _step(
                "step_5",
                "Calculate Terminal Value",
                "Determine terminal value using perpetuity growth",
                "calculate_terminal_value",
                {"method": "perpetuity_growth"},
            ),
            _step("step_6", "Discount Cash Flows", "Calculate present value of FCF and terminal value", "discount_cash_flows"),
            _step("step_7", "Run Sensitivity Analysis", "Test valuation across WACC and growth assumptions", "sensitivity_analysis"),
        ),
    ),
    TaskTemplate(
        type="competitive-analysis",
        description="Analyze competitive position",
        steps=(
            _step("step_1", "Identify Competitors", "Find top 5 competitors in same industry", "identify_competitors", {"count": 5}),
            _step("step_2", "Fetch Competitor Data", "Load financial data for competitors", "fetch_competitor_data"),
            _step(
                "step_3",
                "Compare Metrics",
                "Compare ROIC, margins, growth rates",
                "compare_metrics",
                {"metrics": ["roic", "margins", "growth", "valuation"]},
            ),
            _step("step_4", "Analyze Competitive Position", "Assess competitive advantages and disadvantages", "analyze_position"),
            _step("step_5", "Generate Report", "Create competitive analysis report", "generate_report"),
        ),
    ),
    TaskTemplate(
        type="thesis-validation",
        description="Validate investment thesis",
        steps=(
            _step("step_1", "Extract Current Thesis", "Load investment thesis from workspace", "extract_thesis"),
            _step("step_2", "Gather Evidence", "Collect supporting and contradicting data", "gather_evidence"),
            _step("step_3", "Challenge Assumptions", "Test key assumptions with data", "challenge_assumptions"),
            _step("step_4", "Identify Weak Points", "Find vulnerabilities in thesis", "identify_weak_points"),
            _step("step_5", "Generate Validation Report", "Create thesis strength assessment", "generate_validation"),
        ),
    ),
    TaskTemplate(
        type="risk-assessment",
        description="Assess investment risks",
        steps=(
            _step("step_1", "Identify Risk Categories", "Categorize operational, financial, market risks", "categorize_risks"),
            _step("step_2", "Assess Probability", "Estimate likelihood of each risk", "assess_probability"),
            _step("step_3", "Calculate Impact", "Quantify potential impact on value", "calculate_impact"),
            _step("step_4", "Prioritize Risks", "Rank risks by probability x impact", "prioritize_risks"),
        ),
    ),
    TaskTemplate(
        type="quarterly-update",
        description="Process quarterly earnings update",
        steps=(
            _step("step_1", "Fetch Latest 10-Q", "Download most recent quarterly filing", "fetch_filing", {"formType": "10-Q"}),
            _step("step_2", "Compare to Expectations", "Check results vs guidance and estimates", "compare_expectations"),
            _step("step_3", "Update Financial Model", "Revise projections based on actuals", "update_model"),
            _step("step_4", "Reassess Thesis", "Determine if thesis still valid", "reassess_thesis"),
            _step("step_5", "Generate Update Report", "Create quarterly update summary", "generate_update"),
        ),
    ),
)


class TemplateCatalog:
    """Lookup from task type to its template."""

    def __init__(self, templates: list[TaskTemplate] | tuple[TaskTemplate, ...] = ()):
        self._templates: dict[str, TaskTemplate] = {}
        for template in templates:
            self.register(template)

    def register(self, template: TaskTemplate, replace: bool = False) -> None:
        if template.type in self._templates and not replace:
            raise ValueError(f"Task type already registered: {template.type}")
        self._templates[template.type] = template

    def get(self, task_type: str) -> TaskTemplate | None:
        return self._templates.get(task_type)

    def types(self) -> list[str]:
        return list(self._templates)

    def actions(self) -> list[str]:
        """All distinct actions used by registered templates, in first-seen order."""
        seen: dict[str, None] = {}
        for template in self._templates.values():
            for action in template.actions:
                seen.setdefault(action, None)
        return list(seen)

    def __contains__(self, task_type: object) -> bool:
        return task_type in self._templates

    def __len__(self) -> int:
        return len(self._templates)

    def load_directory(self, directory: str | Path) -> int:
        """Load ``*.yaml``/``*.yml`` templates from a directory.

        Files with a type that is already registered replace the existing
        template. Invalid files are logged and skipped.

        Returns:
            Number of templates loaded
        """
        path = Path(directory).expanduser()
        if not path.is_dir():
            logger.warning(f"Template directory not found: {path}")
            return 0

        loaded = 0
        for file_path in sorted([*path.glob("*.yaml"), *path.glob("*.yml")]):
            try:
                with file_path.open("r", encoding="utf-8") as f:
                    data = yaml.safe_load(f)
                if not data:
                    logger.warning(f"Empty template file: {file_path}")
                    continue
                template = TaskTemplate.from_dict(data)
            except yaml.YAMLError as e:
                logger.error(f"Invalid YAML in template file {file_path}: {e}")
                continue
            except (KeyError, TypeError, ValueError) as e:
                logger.error(f"Invalid task template in {file_path}: {e}")
                continue

            self.register(template, replace=True)
            loaded += 1
            logger.debug(f"Loaded task template: {template.type}")
        return loaded


def save_template(template: TaskTemplate, directory: str | Path) -> Path:
    """Write a template to ``<directory>/<type>.yaml``."""
    path = Path(directory).expanduser()
    path.mkdir(parents=True, exist_ok=True)
    safe_name = "".join(c if c.isalnum() or c in "-_" else "-" for c in template.type.lower())
    file_path = path / f"{safe_name}.yaml"
    with file_path.open("w", encoding="utf-8") as f:
        yaml.dump(template.to_dict(), f, default_flow_style=False, sort_keys=False, allow_unicode=True)
    logger.info(f"Saved task template: {template.type} to {file_path}")
    return file_path


def default_catalog(directory: str | Path | None = None) -> TemplateCatalog:
    """Catalog with the built-in templates plus any found in ``directory``."""
    catalog = TemplateCatalog(BUILTIN_TEMPLATES)
    if directory:
        catalog.load_directory(directory)
    return catalog
