from pydantic import BaseModel


class FileInfo(BaseModel):
    """One entry of the file listing. Times are epoch milliseconds."""
    name: str
    uploadTime: int
    expiryTime: int
