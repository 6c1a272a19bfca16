"""
Automation Action Registry: system actions run by ``automation`` steps.

An action is an async callable ``(params, context) -> dict | None``.
A returned dict is merged into the execution's ``variables``. Actions run
inside the engine's transition, so they must be quick and must not call
back into the engine.
"""

from typing import Any, Awaitable, Callable, Dict, Optional

AutomationAction = Callable[[dict, dict], Awaitable[Optional[dict]]]


class UnknownAutomationAction(LookupError):
    """No action registered under the requested name."""


async def set_variables(params: dict, context: dict) -> Optional[dict]:
    """Copy ``params`` into the execution variables."""
    return dict(params)


async def noop(params: dict, context: dict) -> Optional[dict]:
    return None


class AutomationRegistry:
    """Central registry for automation actions."""

    def __init__(self):
        self._actions: Dict[str, AutomationAction] = {}
        self._register_builtin_actions()

    def _register_builtin_actions(self):
        self.register("set_variables", set_variables)
        self.register("noop", noop)

    def register(self, name: str, action: AutomationAction):
        """Register a new action."""
        self._actions[name] = action

    def get(self, name: str) -> Optional[AutomationAction]:
        return self._actions.get(name)

    async def run(self, name: str, params: dict, context: Dict[str, Any]) -> dict:
        """Run an action and return the variables it produced.

        Raises:
            UnknownAutomationAction: If nothing is registered under ``name``
        """
        action = self.get(name)
        if action is None:
            raise UnknownAutomationAction(name)
        result = await action(params, context)
        if result is not None and not isinstance(result, dict):
            raise TypeError(f"automation '{name}' returned {type(result).__name__}, expected dict")
        return result or {}

    @property
    def available_actions(self) -> list:
        return sorted(self._actions)


# Singleton
_registry: Optional[AutomationRegistry] = None


def get_automation_registry() -> AutomationRegistry:
    """Get or create the singleton automation registry."""
    global _registry
    if _registry is None:
        _registry = AutomationRegistry()
    return _registry
