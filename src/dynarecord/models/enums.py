from enum import StrEnum


class ColumnType(StrEnum):
    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    NULL = "null"
    OBJECT = "object"
    ARRAY = "array"


class ModelState(StrEnum):
    NEW = "new"
    BOUND = "bound"
    VOID = "void"


class SortDirection(StrEnum):
    ASC = "ASC"
    DESC = "DESC"
