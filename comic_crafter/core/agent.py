from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple, Type
from pydantic import BaseModel
import logging

from comic_crafter.core.errors import MalformedResponse

logger = logging.getLogger(__name__)

class BaseAgent(ABC):
    """
    Abstract base class for all agents in the comic generation pipeline.
    Each agent performs one kind of generative call in `process`; `run` wraps it
    with bounded retry, schema validation and logging.
    """
    # Exceptions worth another try. Malformed output is never retried here:
    # the pipeline surfaces it so the user can re-run the whole stage.
    retryable: Tuple[Type[Exception], ...] = (Exception,)
    non_retryable: Tuple[Type[Exception], ...] = (MalformedResponse,)

    def __init__(self, agent_name: str, config: Dict[str, Any] = None):
        self.name = agent_name
        self.config = config or {}
        self.logger = logging.getLogger(f"Agent.{agent_name}")

    @abstractmethod
    def process(self, *args, **kwargs) -> Any:
        pass

    def validate_output(self, data: Any, expected_schema: Any) -> Any:
        """
        Validates that the data matches the expected Pydantic schema.
        Raises MalformedResponse if invalid.
        """
        if isinstance(expected_schema, type) and issubclass(expected_schema, BaseModel):
            if isinstance(data, expected_schema):
                return data
            if isinstance(data, dict):
                try:
                    return expected_schema.model_validate(data)
                except Exception as e:
                    raise MalformedResponse(f"{self.name} output does not match {expected_schema.__name__}: {e}") from e
            raise MalformedResponse(f"Data type {type(data)} does not match schema {expected_schema}")
        return data

    def run(self, *args, expected_schema: Any = None, **kwargs) -> Any:
        """
        Orchestrates process + validation with the agent's retry budget
        (config 'tries', default 1: a single attempt).
        """
        self.logger.info(f"Starting execution for {self.name}...")
        from comic_crafter.agents.infrastructure.resilience_agent import safe_retry

        @safe_retry(
            tries=self.config.get("tries", 1),
            delay=self.config.get("delay", 1),
            backoff=2,
            exceptions=self.retryable,
            skip=self.non_retryable,
        )
        def inner_process():
            return self.process(*args, **kwargs)

        try:
            result = inner_process()
            if expected_schema:
                result = self.validate_output(result, expected_schema)
            self.logger.info(f"Execution handling complete for {self.name}.")
            return result
        except Exception as e:
            self.logger.error(f"Error in {self.name}: {str(e)}")
            raise
