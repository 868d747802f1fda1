# VentasCom Order Agent
# Chat order messages to validated, client-grouped line items

__version__ = '0.1.0'

from .models import (
    Client,
    Product,
    Variant,
    DraftLineItem,
    OrderLineItem,
    GroupedOrder,
    ProcessingTask,
    ItemStatus,
    Stage,
    TaskStatus,
)
from .similarity import score
from .message_parser import MessageParser, parse_message
from .order_validator import validate_orders
from .refinement import OrderRefiner
from .gemini_client import GeminiClient, StubTextClient
from .task_store import TaskStore
from .sync_client import TaskMirrorClient, StubTaskMirror
from .catalog_client import CatalogClient, StaticCatalog
from .processing_service import MessageProcessingService

__all__ = [
    'Client',
    'Product',
    'Variant',
    'DraftLineItem',
    'OrderLineItem',
    'GroupedOrder',
    'ProcessingTask',
    'ItemStatus',
    'Stage',
    'TaskStatus',
    'score',
    'MessageParser',
    'parse_message',
    'validate_orders',
    'OrderRefiner',
    'GeminiClient',
    'StubTextClient',
    'TaskStore',
    'TaskMirrorClient',
    'StubTaskMirror',
    'CatalogClient',
    'StaticCatalog',
    'MessageProcessingService',
]
