from motor.motor_asyncio import AsyncIOMotorDatabase, AsyncIOMotorGridFSBucket


class MediaStore:

    def __init__(self, db: AsyncIOMotorDatabase, bucket_name: str = "chat_media") -> None:
        self._bucket = AsyncIOMotorGridFSBucket(db, bucket_name=bucket_name)

    async def upload_bytes(self, path: str, data: bytes, content_type: str) -> str:
        await self._bucket.upload_from_stream(path, data, metadata={"contentType": content_type})
        return path

    async def delete(self, path: str) -> None:
        async for grid_out in self._bucket.find({"filename": path}):
            await self._bucket.delete(grid_out._id)
