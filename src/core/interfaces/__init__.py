"""Interfaces/abstracciones del Core.

Contratos (Protocol) que implementan los adaptadores concretos: el Core
depende de abstracciones, no de Supabase, anti-captcha ni diccionarios en
memoria.
"""

from core.interfaces.collaborators import (
    AdmissionGate,
    CaptchaSolver,
    ProfileStore,
    SessionCache,
)

__all__ = [
    "AdmissionGate",
    "CaptchaSolver",
    "ProfileStore",
    "SessionCache",
]
