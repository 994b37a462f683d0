"""
Utilities package for Hybrid Orchestrator

Logging, credential encryption and prompt templating. The PostgreSQL
DatabaseManager lives in ``utils.database``.
"""

from .logger import setup_logger, get_logger, set_log_context, clear_log_context, LoggerContext
from .encryption import EncryptedPayload, encrypt, decrypt, derive_key
from .templating import render_template, extract_variables, format_responses

__all__ = [
    "setup_logger",
    "get_logger",
    "set_log_context",
    "clear_log_context",
    "LoggerContext",
    "EncryptedPayload",
    "encrypt",
    "decrypt",
    "derive_key",
    "render_template",
    "extract_variables",
    "format_responses"
]
