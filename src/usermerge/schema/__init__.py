"""Schema metadata: table descriptors, reflection and schema hints."""

from usermerge.schema.descriptors import (
    ColumnDescriptor,
    ForeignKeyDescriptor,
    TableDescriptor,
)
from usermerge.schema.hints import SchemaHints, load_schema_hints
from usermerge.schema.introspector import SchemaIntrospector

__all__ = [
    "ColumnDescriptor",
    "ForeignKeyDescriptor",
    "SchemaHints",
    "SchemaIntrospector",
    "TableDescriptor",
    "load_schema_hints",
]
