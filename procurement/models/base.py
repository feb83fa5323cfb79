"""
Document base shared by purchase orders, products, cost records and the audit log.

Ids generated by MongoDB are ObjectIds; ids supplied by callers (e.g. "po_001")
are stored as plain strings. Both read back as str.
"""
from typing import Annotated, Any, Dict, Optional, Set, Type, TypeVar, Union
from pydantic import BaseModel, BeforeValidator, Field, ConfigDict
from bson import ObjectId

PyObjectId = Annotated[str, BeforeValidator(str)]

T = TypeVar("T", bound="MongoModel")

def mongo_id(value: str) -> Union[ObjectId, str]:
    """Stored form of an id: ObjectId when it parses as one, otherwise the raw string."""
    return ObjectId(value) if ObjectId.is_valid(value) else value

class MongoModel(BaseModel):
    id: Optional[PyObjectId] = Field(default=None, alias="_id")

    model_config = ConfigDict(
        populate_by_name=True,
        arbitrary_types_allowed=True,
    )

    @classmethod
    def from_mongo(cls: Type[T], data: Optional[Dict[str, Any]]) -> Optional[T]:
        if not data:
            return None
        data = dict(data)
        return cls(id=data.pop("_id", None), **data)

    def to_mongo(self, exclude_none: bool = False, exclude: Optional[Set[str]] = None) -> Dict[str, Any]:
        """Document for insert or replace. A caller-supplied id is written as `_id`."""
        data = self.model_dump(by_alias=True, exclude_none=exclude_none, exclude=exclude)
        doc_id = data.pop("_id", None)
        if doc_id is not None:
            data["_id"] = mongo_id(doc_id)
        return data
