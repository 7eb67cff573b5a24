from .environment import Environment, configure_logging

__all__ = ['Environment', 'configure_logging']
