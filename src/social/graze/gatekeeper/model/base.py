from sqlalchemy import String, orm
from sqlalchemy.orm import mapped_column

from typing_extensions import Annotated

str16 = Annotated[str, 16]
str64 = Annotated[str, 64]
nicknamepk = Annotated[str, mapped_column(String(16), primary_key=True)]


class Base(orm.DeclarativeBase):
    type_annotation_map = {
        str16: String(16),
        str64: String(64),
        nicknamepk: String(16),
    }
