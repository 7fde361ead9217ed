"""
Workflow Catalog Module

Immutable registry of per-category workflow definitions. Definitions are
declarative (steps, legal transitions, approver roles, SLA window), loaded once
at startup and validated so that a malformed graph stops the process instead
of surfacing as a runtime inconsistency.
"""

import hashlib
import json
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union

import yaml

from .exceptions import CatalogValidationError
from .logging_config import get_logger


DEFAULT_CATALOG_PATH = Path(__file__).parent / "workflows.yaml"

logger = get_logger("caseflow.catalog")


class WorkflowKind(Enum):
    """Classification tag for a workflow (informational only)"""
    APPROVAL = "approval"
    SIMPLE = "simple"
    MONITORING = "monitoring"
    ESCALATION = "escalation"
    PROJECT = "project"
    OPERATIONAL = "operational"
    FINANCIAL = "financial"
    ENGAGEMENT = "engagement"
    PARTNERSHIP = "partnership"
    TECHNICAL = "technical"
    SECURITY = "security"
    MAINTENANCE = "maintenance"


@dataclass(frozen=True)
class StepDefinition:
    """A named state in a category's graph"""
    name: str
    display_name: str
    editable: bool = False
    next_steps: Tuple[str, ...] = ()
    # Per-step override of the category approver roles; None means inherit.
    approver_roles: Optional[Tuple[str, ...]] = None

    @property
    def is_terminal(self) -> bool:
        return not self.next_steps

    def allows(self, action: str) -> bool:
        return action in self.next_steps

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'name': self.display_name,
            'editable': self.editable,
            'next_steps': list(self.next_steps),
        }
        if self.approver_roles is not None:
            data['approver_roles'] = list(self.approver_roles)
        return data


@dataclass(frozen=True)
class WorkflowDefinition:
    """Workflow definition for one case category"""
    category: str
    kind: WorkflowKind
    initial_step: str
    steps: Mapping[str, StepDefinition]
    approver_roles: Tuple[str, ...] = ()
    sla_hours: int = 72
    display_name: str = ""
    description: str = ""

    def step(self, name: str) -> Optional[StepDefinition]:
        return self.steps.get(name)

    def is_terminal(self, step_name: str) -> bool:
        step = self.steps.get(step_name)
        return step is not None and step.is_terminal

    def terminal_steps(self) -> List[str]:
        return [name for name, step in self.steps.items() if step.is_terminal]

    def validate(self) -> List[str]:
        """Return a list of invariant violations (empty when valid)"""
        errors = []
        prefix = f"[{self.category or '<unnamed>'}]"

        if not self.category:
            errors.append(f"{prefix} category must be a non-empty string")
        if not self.steps:
            errors.append(f"{prefix} workflow must declare at least one step")
        if self.initial_step not in self.steps:
            errors.append(f"{prefix} initial step '{self.initial_step}' is not a declared step")
        if not isinstance(self.sla_hours, int) or isinstance(self.sla_hours, bool) or self.sla_hours <= 0:
            errors.append(f"{prefix} sla_hours must be a positive integer, got {self.sla_hours!r}")

        for name, step in self.steps.items():
            if not name:
                errors.append(f"{prefix} step names must be non-empty")
            for target in step.next_steps:
                if target not in self.steps:
                    errors.append(f"{prefix} step '{name}' references undeclared next step '{target}'")
        return errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.kind.value,
            'name': self.display_name,
            'description': self.description,
            'initial_step': self.initial_step,
            'steps': {name: step.to_dict() for name, step in self.steps.items()},
            'approvers': list(self.approver_roles),
            'sla_hours': self.sla_hours,
        }


def _ordered_unique(values) -> Tuple[str, ...]:
    seen = []
    for value in values or ():
        value = str(value)
        if value not in seen:
            seen.append(value)
    return tuple(seen)


def _parse_definition(category: str, raw: Mapping[str, Any]) -> Tuple[Optional[WorkflowDefinition], List[str]]:
    """Build a definition from raw configuration, collecting shape errors"""
    errors = []
    prefix = f"[{category}]"

    if not isinstance(raw, Mapping):
        return None, [f"{prefix} definition must be a mapping"]

    kind_value = raw.get('type', WorkflowKind.APPROVAL.value)
    try:
        kind = WorkflowKind(kind_value)
    except ValueError:
        errors.append(f"{prefix} unknown workflow type '{kind_value}'")
        kind = WorkflowKind.APPROVAL

    raw_steps = raw.get('steps') or {}
    if not isinstance(raw_steps, Mapping):
        return None, errors + [f"{prefix} steps must be a mapping of step name to step"]

    steps = {}
    for name, step_raw in raw_steps.items():
        step_raw = step_raw or {}
        if not isinstance(step_raw, Mapping):
            errors.append(f"{prefix} step '{name}' must be a mapping")
            continue
        override = step_raw.get('approver_roles')
        steps[str(name)] = StepDefinition(
            name=str(name),
            display_name=str(step_raw.get('name') or str(name).replace('_', ' ').title()),
            editable=bool(step_raw.get('editable', step_raw.get('can_edit', False))),
            next_steps=_ordered_unique(step_raw.get('next_steps')),
            approver_roles=_ordered_unique(override) if override is not None else None,
        )

    definition = WorkflowDefinition(
        category=category,
        kind=kind,
        initial_step=str(raw.get('initial_step', 'draft')),
        steps=MappingProxyType(steps),
        approver_roles=_ordered_unique(raw.get('approvers', raw.get('approver_roles'))),
        sla_hours=raw.get('sla_hours', 72),
        display_name=str(raw.get('name') or category.replace('_', ' ').title()),
        description=str(raw.get('description') or ""),
    )
    return definition, errors + definition.validate()


class _UniqueKeyLoader(yaml.SafeLoader):
    """Safe loader that records mapping keys defined more than once"""

    def __init__(self, stream):
        super().__init__(stream)
        self.duplicate_keys: List[str] = []

    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _ in node.value:
            if not isinstance(key_node, yaml.ScalarNode) or key_node.tag == 'tag:yaml.org,2002:merge':
                continue
            if key_node.value in seen:
                self.duplicate_keys.append(
                    f"duplicate key '{key_node.value}' at line {key_node.start_mark.line + 1}"
                )
            seen.add(key_node.value)
        return super().construct_mapping(node, deep=deep)


class WorkflowCatalog:
    """
    Read-only registry mapping a category to its WorkflowDefinition.

    Safe to share between threads: nothing is mutated after construction.
    """

    def __init__(self, definitions: Mapping[str, WorkflowDefinition]):
        errors = []
        for category, definition in definitions.items():
            if category != definition.category:
                errors.append(f"[{category}] registered under a different category '{definition.category}'")
            errors.extend(definition.validate())
        if errors:
            raise CatalogValidationError(errors)
        self._definitions = MappingProxyType(dict(definitions))

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> 'WorkflowCatalog':
        """Build a catalog from a category -> definition mapping"""
        if not isinstance(raw, Mapping):
            raise CatalogValidationError(["catalog must be a mapping of category to definition"])

        definitions = {}
        errors = []
        for category, definition_raw in raw.items():
            definition, problems = _parse_definition(str(category), definition_raw)
            errors.extend(problems)
            if definition is not None:
                definitions[str(category)] = definition

        if errors:
            raise CatalogValidationError(errors)
        return cls(definitions)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> 'WorkflowCatalog':
        """Load a catalog from a YAML file with a top-level ``workflows`` mapping"""
        path = Path(path)
        with path.open('r', encoding='utf-8') as handle:
            loader = _UniqueKeyLoader(handle)
            try:
                document = loader.get_single_data() or {}
            finally:
                loader.dispose()
        if loader.duplicate_keys:
            raise CatalogValidationError(loader.duplicate_keys)

        raw = document.get('workflows', document) if isinstance(document, Mapping) else document
        catalog = cls.from_dict(raw)
        logger.info(f"Loaded {len(catalog)} workflow definitions from {path} (checksum {catalog.checksum()[:12]})")
        return catalog

    @classmethod
    def load_default(cls) -> 'WorkflowCatalog':
        """Load the catalog bundled with the package"""
        return cls.from_yaml(DEFAULT_CATALOG_PATH)

    def lookup(self, category: Optional[str]) -> Optional[WorkflowDefinition]:
        """Definition for a category, or None when no workflow is configured"""
        if category is None:
            return None
        return self._definitions.get(category)

    def categories(self) -> List[str]:
        return sorted(self._definitions)

    def to_dict(self) -> Dict[str, Any]:
        """Normalized configuration, suitable for diffing"""
        return {category: self._definitions[category].to_dict() for category in self.categories()}

    def checksum(self) -> str:
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(canonical.encode('utf-8')).hexdigest()

    def __contains__(self, category: object) -> bool:
        return category in self._definitions

    def __iter__(self) -> Iterator[WorkflowDefinition]:
        return iter(self._definitions[category] for category in self.categories())

    def __len__(self) -> int:
        return len(self._definitions)
