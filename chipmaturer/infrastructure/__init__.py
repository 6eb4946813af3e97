# Infrastructure Layer
# ====================
# Contains all external service integrations:
# - whatsapp/: Evolution API messaging gateway client
# - llm/: OpenAI chat completions message generator
# - persistence/: SQLite repository
# - config/: Environment and settings management
