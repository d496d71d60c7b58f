from nkshield.countermeasures.base import Action, ActionKind, DispatchContext
from nkshield.countermeasures.dispatcher import CountermeasureDispatcher

__all__ = ["Action", "ActionKind", "CountermeasureDispatcher", "DispatchContext"]
