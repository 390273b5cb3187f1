"""
Input Plugin Base - Abstract interface for surfaces that expose the operator.

Input plugins receive requests from outside the process, such as status
queries, manual reconcile triggers and event watches. They never create or
modify declarations: that surface belongs to the host platform.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict


class InputPlugin(ABC):
    """
    Abstract base class for input plugins.

    The application injects the database manager, the event bus and the
    controller before calling start().
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this plugin (e.g., 'http')."""
        pass

    @property
    @abstractmethod
    def version(self) -> str:
        """Plugin version string."""
        pass

    @abstractmethod
    async def initialize(self, config: Dict[str, Any]) -> None:
        """
        Initialize the plugin with configuration.

        Args:
            config: Plugin-specific configuration dictionary
        """
        pass

    @abstractmethod
    async def start(self) -> None:
        """Start serving. Returns when the plugin stops."""
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop the input plugin gracefully."""
        pass

    @abstractmethod
    async def health_check(self) -> tuple[bool, str]:
        """
        Check if the input plugin is healthy.

        Returns:
            Tuple of (is_healthy, status_message).
        """
        pass

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """
        Load plugin-specific configuration from environment variables.

        Returns:
            Dictionary of configuration values for this plugin.
        """
        return {}

    def set_db_manager(self, db_manager: Any) -> None:
        """Set the database manager for plugins that need database access."""
        pass

    def set_event_bus(self, event_bus: Any) -> None:
        """Set the event bus for plugins that stream events."""
        pass

    def set_controller(self, controller: Any) -> None:
        """Set the controller for plugins that trigger reconciles."""
        pass
