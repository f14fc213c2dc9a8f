"""
Durable backends for committed state.

The in-memory backend lives next to the StateRecorder in
``stackplan.provisioning.state``; the MongoDB backend is imported from
``stackplan.state_provider.mongodb``.
"""
from .json_file import JsonFileStateBackend

__all__ = [
    'JsonFileStateBackend',
]
