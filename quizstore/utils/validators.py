"""Validation utilities"""

from typing import Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

from quizstore.core.exceptions import ValidationException

ModelT = TypeVar("ModelT", bound=BaseModel)


def validate_model(model_cls: Type[ModelT], data: Union[BaseModel, dict]) -> ModelT:
    """Parse input into ``model_cls``, raising ValidationException on bad input"""
    if isinstance(data, BaseModel):
        data = data.model_dump()
    try:
        return model_cls.model_validate(data)
    except ValidationError as e:
        raise ValidationException.from_pydantic(e, f"Invalid {model_cls.__name__}") from e
