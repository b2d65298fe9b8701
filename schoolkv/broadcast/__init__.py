"""Cross-context change propagation over MQTT."""

from .broadcaster import ChangeBroadcaster, ChangeEvent, ChangeListener, Subscription

__all__ = ["ChangeBroadcaster", "ChangeEvent", "ChangeListener", "Subscription"]
