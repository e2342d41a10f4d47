"""
Maps validated labels to game actions.

Subscribed to ``Events.PREDICTION_UPDATED``; for every control tick whose
label has a configured action it publishes ``Events.ACTION_REQUESTED``
and calls any registered callbacks. The game side decides what an action
does (e.g. ``jump`` sets the player's velocity, ``quit`` ends the session).
"""

import logging

from core.events import Events

logger = logging.getLogger(__name__)


class ActionDispatcher:
    """Turns predictions into named actions."""

    def __init__(self, config: dict, event_bus=None):
        self._actions = dict(config.get("actions", {}))
        self._bus = event_bus
        self._callbacks = []
        self._counts = {}
        if self._bus is not None:
            self._bus.subscribe(Events.PREDICTION_UPDATED, self.on_prediction)
        logger.info("ActionDispatcher mapping: %s",
                    ", ".join("%s->%s" % kv for kv in self._actions.items()) or "none")

    def on_action(self, callback):
        """Register ``callback(action, label)``."""
        self._callbacks.append(callback)

    def action_for(self, label):
        if label is None:
            return None
        return self._actions.get(label)

    def on_prediction(self, prediction=None, **kwargs):
        if prediction is None or not prediction.is_valid:
            return None
        return self.dispatch(prediction.label)

    def dispatch(self, label):
        """Request the action bound to ``label``. Returns the action name or None."""
        action = self.action_for(label)
        if action is None:
            return None
        self._counts[action] = self._counts.get(action, 0) + 1
        if self._bus is not None:
            self._bus.emit(Events.ACTION_REQUESTED, action=action, label=label)
        for callback in self._callbacks:
            callback(action, label)
        return action

    @property
    def counts(self) -> dict:
        return dict(self._counts)
