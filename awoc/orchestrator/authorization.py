"""
AWOC — Module Registry
========================
Installed modules (apps and the core), what they may emit, what they
subscribe to, which folders and users they may address, and the task
definitions that run when a subscribed event arrives.

Scope fields are optional: a ``None`` scope grants access to everything,
an explicit set restricts it.  A target on an event is only checked when
present.

Usage:
    modules = ModuleRegistry()
    modules.register(ModuleDefinition(
        identifier="billing",
        emits={"billing:invoice_created"},
    ))
    modules.register(ModuleDefinition(
        identifier="ledger",
        tasks=[TaskDefinition(
            task_identifier="record_invoice",
            handler_kind=HandlerKind.WORKER,
            handler_identifier="recorder",
            subscribed_event_key="billing:invoice_created",
        )],
    ))
    modules.subscribers_for("billing:invoice_created")   # ["ledger"]
"""

from __future__ import annotations

from pydantic import BaseModel, Field, model_validator

from awoc.core.exceptions import ConfigurationError
from awoc.models.events import EVENT_KEY_PATTERN, split_event_key
from awoc.models.tasks import CORE_IDENTIFIER, HandlerKind, TargetLocation


class TaskDefinition(BaseModel):
    """One task a module can run."""

    task_identifier: str = Field(pattern=r"^[a-z_]+$")
    description: str = ""
    handler_kind: HandlerKind
    handler_identifier: str | None = None
    subscribed_event_key: str | None = Field(
        default=None, pattern=EVENT_KEY_PATTERN.pattern
    )
    # follow-up task identifiers of the same module, run when this one ends
    on_complete: list[str] = Field(default_factory=list)
    max_attempts: int | None = Field(default=None, ge=1)


class ModuleDefinition(BaseModel):
    """An installed module."""

    identifier: str = Field(pattern=r"^[a-z_]+$")
    # exact keys, or ``domain:*`` for every key of a domain
    emits: set[str] = Field(default_factory=set)
    subscribes: set[str] = Field(default_factory=set)
    folder_scope: set[str] | None = None
    user_scope: set[str] | None = None
    tasks: list[TaskDefinition] = Field(default_factory=list)
    enabled: bool = True

    @model_validator(mode="after")
    def _consistent(self) -> ModuleDefinition:
        identifiers = [t.task_identifier for t in self.tasks]
        if len(identifiers) != len(set(identifiers)):
            raise ValueError(f"module '{self.identifier}' has duplicate task identifiers")
        for task in self.tasks:
            if task.handler_kind == HandlerKind.CORE and self.identifier != CORE_IDENTIFIER:
                raise ValueError(
                    f"task '{task.task_identifier}': only the core module "
                    "may define internal-only tasks"
                )
            missing = set(task.on_complete) - set(identifiers)
            if missing:
                raise ValueError(
                    f"task '{task.task_identifier}' chains unknown tasks: "
                    f"{sorted(missing)}"
                )
        return self

    @property
    def subscribed_keys(self) -> set[str]:
        keys = set(self.subscribes)
        keys.update(
            t.subscribed_event_key for t in self.tasks if t.subscribed_event_key
        )
        return keys


class ModuleRegistry:
    """Answers authorization and subscription questions for the event bus."""

    def __init__(self, modules: list[ModuleDefinition] | None = None) -> None:
        self._modules: dict[str, ModuleDefinition] = {}
        for module in modules or []:
            self.register(module)

    def register(self, module: ModuleDefinition) -> None:
        if module.identifier in self._modules:
            raise ConfigurationError(
                f"Module '{module.identifier}' is already registered"
            )
        self._modules[module.identifier] = module

    def unregister(self, identifier: str) -> None:
        self._modules.pop(identifier, None)

    def get(self, identifier: str) -> ModuleDefinition | None:
        return self._modules.get(identifier)

    def _enabled(self, identifier: str) -> ModuleDefinition | None:
        module = self._modules.get(identifier)
        return module if module is not None and module.enabled else None

    # ── Authorization ───────────────────────────────────────────────────

    def can_emit(self, emitter_identifier: str, event_key: str) -> bool:
        if emitter_identifier == CORE_IDENTIFIER:
            return True
        module = self._enabled(emitter_identifier)
        if module is None:
            return False
        domain, _ = split_event_key(event_key)
        return event_key in module.emits or f"{domain}:*" in module.emits

    def can_access_location(
        self, identifier: str, location: TargetLocation | None
    ) -> bool:
        if location is None or identifier == CORE_IDENTIFIER:
            return True
        module = self._enabled(identifier)
        if module is None:
            return False
        return module.folder_scope is None or location.folder_id in module.folder_scope

    def can_access_user(self, identifier: str, user_id: str | None) -> bool:
        if user_id is None or identifier == CORE_IDENTIFIER:
            return True
        module = self._enabled(identifier)
        if module is None:
            return False
        return module.user_scope is None or user_id in module.user_scope

    # ── Subscriptions ───────────────────────────────────────────────────

    def subscribers_for(self, event_key: str) -> list[str]:
        """Enabled modules subscribed to ``event_key``, in registration order."""
        return [
            m.identifier
            for m in self._modules.values()
            if m.enabled and event_key in m.subscribed_keys
        ]

    def resolve_task_definitions(
        self, subscriber_identifier: str, event_key: str
    ) -> list[TaskDefinition]:
        module = self._enabled(subscriber_identifier)
        if module is None:
            return []
        return [t for t in module.tasks if t.subscribed_event_key == event_key]

    def handled_receipt_keys(self) -> set[tuple[str, str]]:
        """
        ``(subscriber, event_key)`` pairs that some task definition consumes.
        Receipts outside this set are never claimed.
        """
        return {
            (m.identifier, t.subscribed_event_key)
            for m in self._modules.values()
            if m.enabled
            for t in m.tasks
            if t.subscribed_event_key
        }

    def get_task_definition(
        self, owner_identifier: str, task_identifier: str
    ) -> TaskDefinition | None:
        module = self._enabled(owner_identifier)
        if module is None:
            return None
        for task in module.tasks:
            if task.task_identifier == task_identifier:
                return task
        return None
