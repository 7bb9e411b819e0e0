"""Signal dispatch to the execution gateway."""

from signal_engine.execution.dispatcher import GATEWAY_ACTIONS, Dispatcher

__all__ = ['GATEWAY_ACTIONS', 'Dispatcher']
