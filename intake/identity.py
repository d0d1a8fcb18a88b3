from __future__ import annotations

from enum import Enum

import structlog
from pydantic import BaseModel, ConfigDict

from intake.state import IdentityScope

logger = structlog.get_logger()


class IdentityAction(str, Enum):
    NOOP = "noop"
    INITIALIZE = "initialize"
    SWITCH_USER = "switch_user"
    MIGRATE = "migrate"
    CLEAR = "clear"


class IdentityTransition(BaseModel):
    model_config = ConfigDict(frozen=True)

    previous: IdentityScope
    current: IdentityScope
    action: IdentityAction

    @property
    def establishes_real(self) -> bool:
        return self.action in {IdentityAction.INITIALIZE, IdentityAction.SWITCH_USER, IdentityAction.MIGRATE}


def decide(previous: IdentityScope, current: IdentityScope) -> IdentityAction:
    if current.kind == "real":
        if previous.kind == "real":
            if previous.user_id == current.user_id:
                return IdentityAction.NOOP
            return IdentityAction.SWITCH_USER
        if previous.kind == "placeholder":
            return IdentityAction.MIGRATE
        return IdentityAction.INITIALIZE
    if previous.kind == "real":
        return IdentityAction.CLEAR
    return IdentityAction.NOOP


class IdentityScopeGuard:
    """Owns the effective identity scope and gates persistence on it."""

    def __init__(self, scope: IdentityScope | None = None) -> None:
        self.scope = scope or IdentityScope.none()

    def observe(self, identity: IdentityScope) -> IdentityTransition:
        transition = IdentityTransition(
            previous=self.scope,
            current=identity,
            action=decide(self.scope, identity),
        )
        self.scope = identity
        if transition.action is not IdentityAction.NOOP:
            logger.info(
                "identity transition",
                previous=str(transition.previous),
                current=str(transition.current),
                action=transition.action.value,
            )
        return transition

    def permits(self, operation: str) -> bool:
        if self.scope.is_real:
            return True
        logger.warning("operation dropped outside a real identity", operation=operation, scope=str(self.scope))
        return False
