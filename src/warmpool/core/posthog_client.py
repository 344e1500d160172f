"""
PostHog Error Tracking Client

Reports fatal daemon errors and failed client sessions to PostHog.
Tracking stays disabled unless an API key is configured.
"""

import logging
from typing import Any, Dict, Optional

from posthog import Posthog

logger = logging.getLogger(__name__)


class PostHogClient:
    """Process-wide PostHog client for error tracking"""

    _instance: Optional[Posthog] = None
    _enabled: bool = False

    @classmethod
    def initialize(cls, api_key: Optional[str], api_host: Optional[str] = None) -> None:
        """Initialize PostHog client on daemon startup"""
        if not api_key or not api_host:
            logger.debug("PostHog API key or host not configured, error tracking disabled")
            cls._enabled = False
            return

        try:
            cls._instance = Posthog(
                project_api_key=api_key,
                host=api_host,
                on_error=cls._on_error,
            )
            cls._enabled = True
            logger.info(f"PostHog error tracking enabled (host: {api_host})")
        except Exception as e:
            logger.error(f"Failed to initialize PostHog client: {e}")
            cls._enabled = False

    @classmethod
    def _on_error(cls, error: Exception, items: Any) -> None:
        logger.error(f"PostHog client error: {error}")

    @classmethod
    def is_enabled(cls) -> bool:
        return cls._enabled and cls._instance is not None

    @classmethod
    def capture_exception(
        cls,
        exception: BaseException,
        worker_id: Optional[str] = None,
        properties: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Send an exception event.

        Args:
            exception: The exception to report
            worker_id: Worker involved, used as the distinct id
            properties: Extra event properties
        """
        if not cls.is_enabled():
            return

        error_properties = {
            "error_type": type(exception).__name__,
            "error_message": str(exception),
            "error_module": exception.__class__.__module__,
            "service": "warmpool",
        }
        if properties:
            error_properties.update(properties)

        try:
            cls._instance.capture(
                distinct_id=worker_id or "warmpool-daemon",
                event="$exception",
                properties=error_properties,
            )
            # The daemon may be about to exit
            cls._instance.flush()
        except Exception as e:
            logger.error(f"Failed to capture exception to PostHog: {e}")

    @classmethod
    def shutdown(cls) -> None:
        """Flush pending events and drop the client"""
        if cls._instance:
            try:
                cls._instance.shutdown()
            except Exception as e:
                logger.error(f"Error shutting down PostHog client: {e}")
            finally:
                cls._instance = None
                cls._enabled = False


def capture_exception(
    exception: BaseException,
    worker_id: Optional[str] = None,
    properties: Optional[Dict[str, Any]] = None,
) -> None:
    """Capture an exception to PostHog"""
    PostHogClient.capture_exception(exception, worker_id, properties)
