"""
Roll relay: mirrors rolls made on the remote dice service into the local session.
"""

from .connection import ConnectionManager, ConnectionStatus
from .dispatcher import RollDispatcher
from .parser import MalformedRollEvent, determine_roll_category, extract_roll_info
from .router import ExecutionRouter, decide_route, execute_remote_payload, handle_remote_execution
from .service import RelayObserver, RelayService

__all__ = [
    'ConnectionManager',
    'ConnectionStatus',
    'RollDispatcher',
    'MalformedRollEvent',
    'determine_roll_category',
    'extract_roll_info',
    'ExecutionRouter',
    'decide_route',
    'execute_remote_payload',
    'handle_remote_execution',
    'RelayObserver',
    'RelayService',
]
