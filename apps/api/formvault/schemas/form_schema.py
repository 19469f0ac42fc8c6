"""Structural form schema as a tagged variant tree, and its flattened projection."""

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class Leaf(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["leaf"] = "leaf"
    name: str
    type: str


class Structure(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["structure"] = "structure"
    name: str
    children: list["SchemaNode"] = Field(default_factory=list)


class Repeat(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["repeat"] = "repeat"
    name: str
    children: list["SchemaNode"] = Field(default_factory=list)


SchemaNode = Annotated[Union[Leaf, Structure, Repeat], Field(discriminator="kind")]

Structure.model_rebuild()
Repeat.model_rebuild()


class FlatField(BaseModel):
    """
    One column (or, for repeats, one child table) of the tabular export.

    Repeat entries keep their own fields in ``children``, with paths relative
    to the repeat node.
    """

    model_config = ConfigDict(frozen=True)

    path: tuple[str, ...]
    type: str
    is_repeat: bool = False
    children: tuple["FlatField", ...] = ()

    @property
    def column_name(self) -> str:
        return "-".join(self.path)

    @property
    def table_name(self) -> str:
        return self.path[-1]


FlatField.model_rebuild()


class FormMetadata(BaseModel):
    xml_form_id: str
    version: str = ""
    public_key: str | None = None
