# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
from reliaprompt.store.base import JobStore
from reliaprompt.store.memory import MemoryJobStore

__all__ = ["JobStore", "MemoryJobStore", "SQLiteJobStore"]


def __getattr__(name):
    if name == "SQLiteJobStore":
        from reliaprompt.store.sqlite_store import SQLiteJobStore
        return SQLiteJobStore
    raise AttributeError("module 'reliaprompt.store' has no attribute '{}'".format(name))
