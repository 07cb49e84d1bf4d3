from dataclasses import dataclass
from typing import List, Optional

from pydantic import BaseModel, Field

from .errors import InvalidInput


class Product(BaseModel):
    id: str
    name: str
    handle: str
    price: float
    currency_code: str = "INR"
    description: str = ""
    thumbnail: Optional[str] = None
    image_urls: List[str] = Field(default_factory=list)
    category_ids: List[str] = Field(default_factory=list)
    collection_ids: List[str] = Field(default_factory=list)
    embedding: Optional[List[float]] = None
    embedding_model: Optional[str] = None

    @property
    def primary_image(self) -> Optional[str]:
        if self.image_urls:
            return self.image_urls[0]
        return self.thumbnail


class Category(BaseModel):
    id: str
    name: str
    handle: str


class Collection(BaseModel):
    id: str
    title: str
    handle: str


class PriceSummary(BaseModel):
    amount: float
    currency_code: str
    formatted: str


class ProductSummary(BaseModel):
    id: str
    title: str
    handle: str
    thumbnail: Optional[str] = None
    price: Optional[PriceSummary] = None


class RankedResult(BaseModel):
    product: ProductSummary
    relevance_score: float
    source: str = "text"   # 'text', 'image' or 'hybrid'


class TextSearchResponse(BaseModel):
    products: List[RankedResult] = Field(default_factory=list)
    categories: List[Category] = Field(default_factory=list)
    collections: List[Collection] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)


class ImageSearchMetadata(BaseModel):
    total: int
    threshold: float
    embeddingDimensions: int


class ImageSearchResponse(BaseModel):
    products: List[RankedResult]
    metadata: ImageSearchMetadata


class BackfillItem(BaseModel):
    id: str
    status: str   # 'success' or 'failed'
    error: Optional[str] = None
    retryable: bool = False   # failed transiently; the attempt was not counted


class BackfillReport(BaseModel):
    processed: int = 0
    success: int = 0
    failed: int = 0
    details: List[BackfillItem] = Field(default_factory=list)
    remaining: bool = False


class EmbeddingStatus(BaseModel):
    total: int
    with_embedding: int
    pending: int
    stale: int
    exhausted: int
    model: str


@dataclass
class SearchQuery:
    """A single search request: text or image bytes, never both."""

    text: Optional[str] = None
    image_bytes: Optional[bytes] = None
    limit: int = 6
    threshold: Optional[float] = None

    def __post_init__(self):
        if self.text is not None:
            self.text = self.text.strip()
        has_text = bool(self.text)
        has_image = bool(self.image_bytes)
        if has_text and has_image:
            raise InvalidInput("query carries both text and image")
        if not has_text and not has_image:
            raise InvalidInput("query is empty", user_message="Please enter a search term or upload an image.")
        if self.limit is None or self.limit < 1:
            raise InvalidInput("limit must be positive: %r" % (self.limit,))
        if self.threshold is not None and not 0.0 <= self.threshold <= 1.0:
            raise InvalidInput("threshold out of range: %r" % (self.threshold,))

    @property
    def mode(self) -> str:
        return "text" if self.text else "image"
