import logging
import time
import functools
import os
import shutil
from typing import Any, Dict, Optional, Callable, Type, Tuple
from comic_crafter.core.agent import BaseAgent

logger = logging.getLogger(__name__)

class ResilienceAgent(BaseAgent):
    """
    Provides the retry decorator used by every agent and the pre-flight health report.
    """
    def __init__(self, agent_name: str = "ResilienceAgent", config: Dict[str, Any] = None):
        super().__init__(agent_name, config)
        self.required_env = self.config.get("required_env", ["GEMINI_API_KEY"])

    def retry(self, exceptions: Tuple[Type[Exception], ...] = (Exception,),
              tries: int = 3, delay: float = 1, backoff: float = 2,
              skip: Tuple[Type[Exception], ...] = ()):
        """
        Retry decorator with exponential backoff.
        Exceptions listed in `skip` propagate immediately.
        """
        def decorator_retry(func: Callable):
            @functools.wraps(func)
            def wrapper_retry(*args, **kwargs):
                mtries, mdelay = tries, delay
                while mtries > 1:
                    try:
                        return func(*args, **kwargs)
                    except skip:
                        raise
                    except exceptions as e:
                        self.logger.warning(f"{str(e)}, Retrying in {mdelay} seconds...")
                        if mdelay:
                            time.sleep(mdelay)
                        mtries -= 1
                        mdelay *= backoff
                return func(*args, **kwargs)
            return wrapper_retry
        return decorator_retry

    def check_system_health(self, llm: Optional[Any] = None) -> Dict[str, Any]:
        """
        Checks disk space, API credentials and, when given, the text model backend.
        """
        health = {
            "status": "healthy",
            "checks": {}
        }

        total, used, free = shutil.disk_usage(".")
        free_gb = free // (2**30)
        health["checks"]["disk_space"] = f"{free_gb} GB free"
        if free_gb < 1:
            health["status"] = "degraded"
            health["checks"]["disk_space"] += " (CRITICAL: Low Space)"

        missing_vars = [v for v in self.required_env if not os.getenv(v)]
        health["checks"]["env_vars"] = "OK" if not missing_vars else f"Missing: {', '.join(missing_vars)}"
        if missing_vars:
            health["status"] = "degraded"

        if llm is not None:
            reachable = llm.is_healthy()
            health["checks"]["llm_backend"] = "reachable" if reachable else "unreachable"
            if not reachable:
                health["status"] = "unhealthy"

        self.logger.info(f"System Health Check Results: {health}")
        return health

    def process(self, llm: Optional[Any] = None) -> Dict[str, Any]:
        return self.check_system_health(llm)

_resilience_instance = None

def get_resilience_agent() -> ResilienceAgent:
    global _resilience_instance
    if _resilience_instance is None:
        _resilience_instance = ResilienceAgent()
    return _resilience_instance

def safe_retry(tries=3, delay=1, backoff=2, exceptions=(Exception,), skip=()):
    """Simple wrapper for using the resilience agent's retry as a decorator."""
    return get_resilience_agent().retry(tries=tries, delay=delay, backoff=backoff, exceptions=exceptions, skip=skip)
