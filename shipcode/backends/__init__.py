"""Backend implementations."""

from shipcode.backends.memory import MemoryBackend
from shipcode.backends.supabase import SupabaseBackend

__all__ = ["MemoryBackend", "SupabaseBackend"]
