"""Pydantic schemas for automation rules, conditions and executions."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union
from uuid import UUID

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_validator,
    model_validator,
)

from flowcore.db.enums import (
    AutomationActionType,
    AutomationTriggerType,
    ConditionOperator,
    EntityType,
    TaskStatus,
)


# =============================================================================
# Field Registry (Whitelist for updates)
# =============================================================================

# Entity kind carried by each trigger's events
TRIGGER_ENTITY_TYPES: dict[AutomationTriggerType, EntityType] = {
    AutomationTriggerType.TASK_CREATED: EntityType.TASK,
    AutomationTriggerType.TASK_STATUS_CHANGED: EntityType.TASK,
    AutomationTriggerType.DUE_DATE_APPROACHING: EntityType.TASK,
    AutomationTriggerType.PROJECT_STATUS_CHANGED: EntityType.PROJECT,
    AutomationTriggerType.TIME_ENTRY_CREATED: EntityType.TIME_ENTRY,
    AutomationTriggerType.TIME_ENTRY_APPROVED: EntityType.TIME_ENTRY,
    AutomationTriggerType.TIME_ENTRY_REJECTED: EntityType.TIME_ENTRY,
    AutomationTriggerType.TIME_ENTRY_CHANGES_REQUESTED: EntityType.TIME_ENTRY,
    AutomationTriggerType.TIME_ENTRY_RESUBMITTED: EntityType.TIME_ENTRY,
    AutomationTriggerType.EXPENSE_CREATED: EntityType.EXPENSE,
    AutomationTriggerType.EXPENSE_APPROVED: EntityType.EXPENSE,
    AutomationTriggerType.EXPENSE_REJECTED: EntityType.EXPENSE,
    AutomationTriggerType.EXPENSE_CHANGES_REQUESTED: EntityType.EXPENSE,
    AutomationTriggerType.EXPENSE_RESUBMITTED: EntityType.EXPENSE,
}

# Status and approval columns are owned by their state machines and never
# writable through update_field.
ALLOWED_UPDATE_FIELDS: dict[EntityType, frozenset[str]] = {
    EntityType.TASK: frozenset(
        {"title", "description", "priority", "due_date", "progress_percentage"}
    ),
    EntityType.PROJECT: frozenset({"name", "description"}),
    EntityType.TIME_ENTRY: frozenset({"notes"}),
    EntityType.EXPENSE: frozenset({"description", "category"}),
}

_ALL_UPDATE_FIELDS = frozenset().union(*ALLOWED_UPDATE_FIELDS.values())

REFERENCE_PREFIXES = ("$event.", "$entity.")

NOTIFICATION_RECIPIENTS = ("assignee", "owner", "creator")


def is_reference(value: object) -> bool:
    """True for ``$event.<field>`` / ``$entity.<field>`` placeholders."""
    return isinstance(value, str) and value.startswith(REFERENCE_PREFIXES)


def _check_reference(value: object) -> object:
    if isinstance(value, str) and not is_reference(value):
        raise ValueError(
            f"Expected an integer or a reference like '$event.user_id', got '{value}'"
        )
    return value


# =============================================================================
# Condition Schemas
# =============================================================================


class Condition(BaseModel):
    """A single condition leaf evaluated against the event snapshot."""

    model_config = ConfigDict(extra="forbid")

    field: str = Field(min_length=1, max_length=100)
    operator: ConditionOperator
    value: object = None

    @model_validator(mode="after")
    def validate_value(self) -> "Condition":
        if self.operator == ConditionOperator.IN and not isinstance(self.value, (list, str)):
            raise ValueError("Operator 'in' expects a list or a comma-separated string")
        return self


class AllOf(BaseModel):
    """Matches when every child matches."""

    model_config = ConfigDict(extra="forbid")

    all: list["ConditionNode"] = Field(min_length=1)


class AnyOf(BaseModel):
    """Matches when at least one child matches."""

    model_config = ConfigDict(extra="forbid")

    any: list["ConditionNode"] = Field(min_length=1)


ConditionNode = Union[Condition, AllOf, AnyOf]

AllOf.model_rebuild()
AnyOf.model_rebuild()


def parse_condition_tree(raw: Any) -> ConditionNode | None:
    """
    Parse a stored condition tree.

    Accepts the canonical form (``{"field", "operator", "value"}`` leaves and
    ``{"all": [...]}`` / ``{"any": [...]}`` combinators), a bare list (implicit
    ``all``), and the shorthand ``{"status": {"eq": "done"}, "priority": 3}``
    where a non-dict value means ``eq``. Empty or null trees return None, which
    matches every event.
    """
    if raw is None or raw == {} or raw == []:
        return None
    if isinstance(raw, (Condition, AllOf, AnyOf)):
        return raw
    if isinstance(raw, list):
        return AllOf(all=[_parse_node(item) for item in raw])
    if not isinstance(raw, dict):
        raise ValueError("Condition tree must be an object or a list")
    return _parse_node(raw)


def _parse_node(raw: Any) -> ConditionNode:
    if isinstance(raw, (Condition, AllOf, AnyOf)):
        return raw
    if isinstance(raw, list):
        return AllOf(all=[_parse_node(item) for item in raw])
    if not isinstance(raw, dict):
        raise ValueError(f"Invalid condition node: {raw!r}")
    if "all" in raw and len(raw) == 1:
        return AllOf(all=[_parse_node(item) for item in raw["all"]])
    if "any" in raw and len(raw) == 1:
        return AnyOf(any=[_parse_node(item) for item in raw["any"]])
    if "field" in raw and "operator" in raw:
        return Condition.model_validate(raw)

    # Shorthand: {"<field>": {"<operator>": value}} or {"<field>": value}
    leaves: list[ConditionNode] = []
    for field, spec in raw.items():
        if isinstance(spec, dict):
            if not spec:
                raise ValueError(f"Empty operator map for field '{field}'")
            for operator, value in spec.items():
                leaves.append(Condition(field=field, operator=operator, value=value))
        else:
            leaves.append(Condition(field=field, operator=ConditionOperator.EQ, value=spec))
    if len(leaves) == 1:
        return leaves[0]
    return AllOf(all=leaves)


def dump_condition_tree(node: ConditionNode | None) -> dict | None:
    """Canonical JSON form stored on the rule."""
    if node is None:
        return None
    return node.model_dump(mode="json")


# =============================================================================
# Action Config Schemas
# =============================================================================

IntOrReference = int | str


class AssignUserActionConfig(BaseModel):
    """Config for assign_user action (targets the triggering task by default)."""

    action_type: Literal["assign_user"] = "assign_user"
    user_id: IntOrReference
    task_id: IntOrReference | None = None

    @field_validator("user_id", "task_id")
    @classmethod
    def validate_references(cls, v: object) -> object:
        return _check_reference(v)


class ChangeStatusActionConfig(BaseModel):
    """Config for change_status action."""

    action_type: Literal["change_status"] = "change_status"
    status: TaskStatus
    task_id: IntOrReference | None = None

    @field_validator("task_id")
    @classmethod
    def validate_references(cls, v: object) -> object:
        return _check_reference(v)


class CreateTaskActionConfig(BaseModel):
    """Config for create_task action."""

    action_type: Literal["create_task"] = "create_task"
    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    priority: int = Field(ge=0, le=5, default=0)
    due_days: int | None = Field(default=None, ge=0, le=365)
    assigned_to: IntOrReference | None = None
    # Defaults to the triggering project (or the triggering entity's project)
    project_id: IntOrReference | None = None

    @field_validator("assigned_to", "project_id")
    @classmethod
    def validate_references(cls, v: object) -> object:
        return _check_reference(v)


class SendNotificationActionConfig(BaseModel):
    """Config for send_notification action."""

    action_type: Literal["send_notification"] = "send_notification"
    template_kind: str = Field(min_length=1, max_length=100)
    recipient: Literal["assignee", "owner", "creator"] | IntOrReference = "assignee"
    params: dict[str, object] = Field(default_factory=dict)

    @field_validator("recipient")
    @classmethod
    def validate_recipient(cls, v: object) -> object:
        if v in NOTIFICATION_RECIPIENTS:
            return v
        return _check_reference(v)


class UpdateFieldActionConfig(BaseModel):
    """Config for update_field action."""

    action_type: Literal["update_field"] = "update_field"
    field: str
    value: object

    @field_validator("field")
    @classmethod
    def validate_field(cls, v: str) -> str:
        if v not in _ALL_UPDATE_FIELDS:
            raise ValueError(
                f"Field '{v}' is not allowed for update. Allowed: {sorted(_ALL_UPDATE_FIELDS)}"
            )
        return v


# Union of all action configs
ActionConfig = Annotated[
    Union[
        AssignUserActionConfig,
        ChangeStatusActionConfig,
        CreateTaskActionConfig,
        SendNotificationActionConfig,
        UpdateFieldActionConfig,
    ],
    Field(discriminator="action_type"),
]

_action_adapter: TypeAdapter[ActionConfig] = TypeAdapter(ActionConfig)


def parse_action_config(action_type: str, params: dict[str, Any] | None) -> ActionConfig:
    """Validate stored action params against the action type's config model."""
    payload = dict(params or {})
    if isinstance(action_type, AutomationActionType):
        action_type = action_type.value
    payload["action_type"] = action_type
    return _action_adapter.validate_python(payload)


def dump_action_params(config: BaseModel) -> dict:
    return config.model_dump(mode="json", exclude={"action_type"}, exclude_none=True)


def validate_action_for_trigger(
    trigger_type: AutomationTriggerType, config: BaseModel
) -> None:
    """Reject action configs that cannot apply to the trigger's entity kind."""
    entity_type = TRIGGER_ENTITY_TYPES[trigger_type]
    if isinstance(config, UpdateFieldActionConfig):
        allowed = ALLOWED_UPDATE_FIELDS[entity_type]
        if config.field not in allowed:
            raise ValueError(
                f"Field '{config.field}' is not allowed for {entity_type.value}. "
                f"Allowed: {sorted(allowed)}"
            )
    elif isinstance(config, (AssignUserActionConfig, ChangeStatusActionConfig)):
        if entity_type != EntityType.TASK and config.task_id is None:
            raise ValueError(
                f"{config.action_type} on a {entity_type.value} trigger requires task_id"
            )


# =============================================================================
# Rule CRUD Schemas
# =============================================================================


class RuleCreate(BaseModel):
    """Schema for creating an automation rule."""

    name: str = Field(min_length=1, max_length=100)
    description: str | None = None
    trigger_type: AutomationTriggerType
    trigger_conditions: dict[str, Any] | list[Any] | None = None
    action_type: AutomationActionType
    action_params: dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    # Rate limits (None = unlimited)
    rate_limit_per_hour: int | None = Field(default=None, ge=1, le=1000)
    rate_limit_per_entity_per_day: int | None = Field(default=None, ge=1, le=100)

    @model_validator(mode="after")
    def normalize(self) -> "RuleCreate":
        tree = parse_condition_tree(self.trigger_conditions)
        self.trigger_conditions = dump_condition_tree(tree)
        config = parse_action_config(self.action_type, self.action_params)
        validate_action_for_trigger(self.trigger_type, config)
        self.action_params = dump_action_params(config)
        return self


class RuleUpdate(BaseModel):
    """Schema for updating a rule (unset fields are left untouched)."""

    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = None
    trigger_type: AutomationTriggerType | None = None
    trigger_conditions: dict[str, Any] | list[Any] | None = None
    action_type: AutomationActionType | None = None
    action_params: dict[str, Any] | None = None
    is_active: bool | None = None
    rate_limit_per_hour: int | None = Field(default=None, ge=1, le=1000)
    rate_limit_per_entity_per_day: int | None = Field(default=None, ge=1, le=100)


class RuleRead(BaseModel):
    """Schema for reading a rule."""

    id: int
    name: str
    description: str | None
    trigger_type: str
    trigger_conditions: dict | None
    action_type: str
    action_params: dict
    is_active: bool
    execution_count: int
    last_executed_at: datetime | None
    rate_limit_per_hour: int | None = None
    rate_limit_per_entity_per_day: int | None = None
    created_by: int | None = None
    updated_by: int | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


# =============================================================================
# Execution Schemas
# =============================================================================


class ExecutionRead(BaseModel):
    """Schema for reading an execution ledger row."""

    id: int
    rule_id: int
    entity_type: str
    entity_id: int
    event_id: UUID
    event_type: str
    outcome: str
    error_message: str | None
    result: dict | None
    duration_ms: int | None
    executed_at: datetime

    model_config = {"from_attributes": True}


class ExecutionResult(BaseModel):
    """Outcome of evaluating one rule against one event."""

    rule_id: int
    outcome: str
    execution_id: int | None = None  # None when nothing was persisted
    error_message: str | None = None
    result: dict | None = None
    duration_ms: int | None = None


# =============================================================================
# Stats and Preview Schemas
# =============================================================================


class RuleStats(BaseModel):
    """Statistics for the rules dashboard."""

    total_rules: int
    active_rules: int
    total_executions_24h: int
    success_rate_24h: float
    by_trigger_type: dict[str, int]


class DryRunResult(BaseModel):
    """Preview of what a rule would do for an event, without side effects."""

    rule_id: int
    matched: bool
    action_type: str
    resolved_params: dict | None = None
    error: str | None = None
