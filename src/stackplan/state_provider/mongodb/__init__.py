from .provider import MongoDBStateBackend, MongoDBConfig

__all__ = [
    'MongoDBStateBackend',
    'MongoDBConfig',
]
