from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Wire format of the portal frontend: camelCase in and out."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)
