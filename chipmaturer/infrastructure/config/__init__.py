from .settings import Settings, GatewaySettings, LLMSettings, SchedulerSettings, get_settings

__all__ = ["Settings", "GatewaySettings", "LLMSettings", "SchedulerSettings", "get_settings"]
