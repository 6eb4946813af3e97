# Chip Maturer - Automated Conversation Engine for Paired WhatsApp Chips
# ========================================================================
# Layered architecture:
#
# - Presentation:   FastAPI JSON API (web/)
# - Application:    Registries and the conversation scheduler (application/)
# - Domain:         Models and exceptions, no external dependencies (domain/)
# - Infrastructure: Evolution API, OpenAI, SQLite, settings (infrastructure/)
#
# Infrastructure clients are injected into the application layer, so the
# gateway or the model provider can be swapped without touching the engine.

__version__ = "0.1.0"
