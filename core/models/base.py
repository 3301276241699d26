import uuid

from sqlalchemy import (  # noqa: F401
    Boolean,
    Column,
    Date,
    Enum as SAEnum,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship  # noqa: F401

Base = declarative_base()


def new_id() -> str:
    return str(uuid.uuid4())


# 金额统一两位小数，汇率四位小数
Money = Numeric(12, 2, asdecimal=True)
Rate = Numeric(12, 4, asdecimal=True)


def enum_type(enum_cls, length: int = 20):
    """以字符串列存储枚举名，读取时还原为枚举成员。"""
    return SAEnum(enum_cls, native_enum=False, length=length, validate_strings=True)
