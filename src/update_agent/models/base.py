"""Shared pydantic base for models serialized with kebab-case keys."""

from pydantic import BaseModel, ConfigDict


class KebabModel(BaseModel):
    """Base model serialized with kebab-case keys."""

    model_config = ConfigDict(
        alias_generator=lambda name: name.replace("_", "-"),
        populate_by_name=True,
    )
