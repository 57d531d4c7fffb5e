"""
Ejunz realtime gateway.
"""
from .protocol import GatewayProtocol, EventType, RecordStatus, RecordUpdate
from .events import EventEmitter
from .errors import (
    GatewayError,
    ConfigurationError,
    ConnectionClosedError,
    CorrelationTimeoutError,
    SubSessionError,
    SubSessionClosedError,
    ToolNotFoundError,
    ToolNotConnectedError,
    ToolCallError,
)
from .correlation import CorrelationTable
from .sentence_buffer import SentenceBuffer

__all__ = [
    'GatewayProtocol',
    'EventType',
    'RecordStatus',
    'RecordUpdate',
    'EventEmitter',
    'GatewayError',
    'ConfigurationError',
    'ConnectionClosedError',
    'CorrelationTimeoutError',
    'SubSessionError',
    'SubSessionClosedError',
    'ToolNotFoundError',
    'ToolNotConnectedError',
    'ToolCallError',
    'CorrelationTable',
    'SentenceBuffer',
]
