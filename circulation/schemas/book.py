from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel, Field


class BookCreate(BaseModel):
    isbn: str = Field(..., min_length=10, max_length=13)
    title: str = Field(..., min_length=1, max_length=255)
    author: str = Field(..., min_length=1, max_length=255)
    publish_year: Optional[int] = None
    category: Optional[str] = Field(None, max_length=100)
    publisher: Optional[str] = Field(None, max_length=255)
    quantity: int = Field(1, ge=1)


class BookUpdate(BaseModel):
    isbn: Optional[str] = Field(None, min_length=10, max_length=13)
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    author: Optional[str] = Field(None, min_length=1, max_length=255)
    publish_year: Optional[int] = None
    category: Optional[str] = Field(None, max_length=100)
    publisher: Optional[str] = Field(None, max_length=255)
    quantity: Optional[int] = Field(None, ge=0)


class BookResponse(BaseModel):
    id: str
    isbn: str
    title: str
    author: str
    publish_year: Optional[int]
    category: Optional[str]
    publisher: Optional[str]
    quantity: int
    available_quantity: int
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class BookListResponse(BaseModel):
    items: List[BookResponse]
    total: int
    page: int
    size: int
    pages: int


class BorrowCheckResponse(BaseModel):
    book_id: str
    is_borrowed: bool
