from typing import Generic, TypeVar, Any, Dict, List, Optional
from motor.motor_asyncio import AsyncIOMotorCollection
from procurement.models.base import MongoModel, mongo_id

T = TypeVar("T", bound=MongoModel)

def id_filter(id: str) -> Dict[str, Any]:
    return {"_id": mongo_id(id)}

class BaseRepository(Generic[T]):
    def __init__(self, collection: AsyncIOMotorCollection, model_cls: type[T]):
        self.collection = collection
        self.model_cls = model_cls

    async def get(self, id: str) -> Optional[T]:
        """Get a document by ID."""
        doc = await self.collection.find_one(id_filter(id))
        return self.model_cls.from_mongo(doc)

    async def get_all_by_field(self, field: str, value: Any, sort_field: Optional[str] = None) -> List[T]:
        """All documents where `field` equals `value`, optionally in ascending `sort_field` order."""
        cursor = self.collection.find({field: value})
        if sort_field:
            cursor = cursor.sort(sort_field, 1)
        docs = await cursor.to_list(length=None)
        return [self.model_cls.from_mongo(doc) for doc in docs]

    async def create(self, model: T) -> T:
        """Create a new document."""
        result = await self.collection.insert_one(model.to_mongo())
        model.id = str(result.inserted_id)
        return model

    async def create_many(self, models: List[T]) -> List[T]:
        if not models:
            return models
        result = await self.collection.insert_many([m.to_mongo() for m in models])
        for model, inserted_id in zip(models, result.inserted_ids):
            model.id = str(inserted_id)
        return models
