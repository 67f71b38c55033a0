from .schema import MemorySchemaMixin
from .sessions import MemorySessionsMixin
from .state import MemoryStateMixin

__all__ = [
    "MemorySchemaMixin",
    "MemorySessionsMixin",
    "MemoryStateMixin",
]
