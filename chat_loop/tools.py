from typing import Any

from pydantic import BaseModel, ValidationError

from chat_loop.exceptions import ToolValidationError


class ToolInput(BaseModel):
    """Subclass this for tool-specific input validation."""


class Tool:
    name: str
    description: str
    input_model: type[BaseModel]

    def schema(self) -> dict:
        """Return JSON schema from Pydantic model."""
        return self.input_model.model_json_schema()

    def describe(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.schema(),
        }

    def to_openai_tool(self) -> dict:
        """Chat-completions function envelope advertised to the model."""
        return {"type": "function", "function": self.describe()}

    def validate(self, arguments: dict) -> dict:
        """Validate raw arguments and return the keyword arguments for execute.

        Raises ToolValidationError when the input model rejects them.
        """
        try:
            validated = self.input_model(**arguments)
        except ValidationError as e:
            raise ToolValidationError(f"Invalid arguments for '{self.name}': {e}") from e
        return validated.model_dump()

    async def execute(self, **kwargs) -> Any:
        """Execute tool. Always async; sync tools wrap sync code.

        Pydantic validates inputs before this is called. Raise
        ToolExecutionError for failures the model should see.
        """
        raise NotImplementedError
