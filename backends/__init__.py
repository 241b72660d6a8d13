# pulseboard/backends/__init__.py
# Purpose: Backend factory (in-memory event source, Supabase-compatible HTTP backend).
from __future__ import annotations
from typing import Any
from .base import Backend, Subscription
from .memory import InMemoryBackend

def get_backend(name: str, **kwargs: Any) -> Backend:
    name = (name or "").lower()
    if name in ("memory", "mem", "inmemory"):
        return InMemoryBackend(**kwargs)
    if name in ("supabase", "http"):
        from .supabase import SupabaseBackend
        return SupabaseBackend(**kwargs)
    raise ValueError(f"Unknown backend: {name}")

__all__ = ["Backend", "InMemoryBackend", "Subscription", "get_backend"]
