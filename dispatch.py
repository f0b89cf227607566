import logging
from typing import Awaitable, Callable, Dict, Iterable, Optional, Tuple

Handler = Callable[..., Awaitable[None]]

SEPARATOR = ":"


def split_action(data: str) -> Tuple[str, Optional[str]]:
    """'confirm_withdraw:<mint>' -> ('confirm_withdraw', '<mint>')"""
    action, sep, arg = data.partition(SEPARATOR)
    return action, (arg if sep else None)


class ActionRegistry:
    """Maps callback action ids to handlers."""

    def __init__(self):
        self._handlers: Dict[str, Handler] = {}

    def __contains__(self, action: str) -> bool:
        return action in self._handlers

    def register(self, action: str, handler: Optional[Handler] = None):
        """Register a handler directly or use as a decorator. Ids must be unique."""
        if not action or SEPARATOR in action:
            raise ValueError(f"Invalid action id: {action!r}")

        def add(func: Handler) -> Handler:
            if action in self._handlers:
                raise ValueError(f"Duplicate handler for action {action!r}")
            self._handlers[action] = func
            return func

        if handler is not None:
            return add(handler)
        return add

    def validate(self, required: Iterable[str]):
        missing = sorted(set(required) - set(self._handlers))
        if missing:
            raise ValueError(f"No handler registered for actions: {', '.join(missing)}")

    async def dispatch(self, data: str, *args) -> bool:
        action, arg = split_action(data)
        handler = self._handlers.get(action)
        if handler is None:
            logging.warning(f"Unknown callback action: {data}")
            return False
        await handler(*args, arg)
        return True
