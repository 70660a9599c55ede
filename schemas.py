# --- Pydantic Schemas ---


from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Dict, Any


class CamelModel(BaseModel):
    # clients send camelCase (userId, csvData, ...); snake_case is accepted too
    model_config = ConfigDict(populate_by_name=True)


# Product Schemas
class ProductCreate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = None
    quantity: Optional[int] = None
    sku: Optional[str] = None
    main_picture_url: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    shipping_price: float = 0
    status: int = 2


class ProductUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = None
    quantity: Optional[int] = None
    sku: Optional[str] = None
    main_picture_url: Optional[str] = None
    images: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    shipping_price: Optional[float] = None
    status: Optional[int] = None


# Banner Schemas
class BannerCreate(BaseModel):
    title: Optional[str] = None
    subtitle: Optional[str] = None
    image_url: Optional[str] = None
    text_color: str = "white"
    action_type: str = "category"
    action_value: Optional[str] = None
    is_active: bool = True
    display_order: int = 0
    start_date: Optional[str] = None
    end_date: Optional[str] = None


class BannerUpdate(BaseModel):
    title: Optional[str] = None
    subtitle: Optional[str] = None
    image_url: Optional[str] = None
    text_color: Optional[str] = None
    action_type: Optional[str] = None
    action_value: Optional[str] = None
    is_active: Optional[bool] = None
    display_order: Optional[int] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None


class BannerOrder(BaseModel):
    id: int
    display_order: int


class BannerReorder(CamelModel):
    banner_orders: List[BannerOrder] = Field(alias="bannerOrders")


# Affiliate Schemas
class AffiliateCreate(CamelModel):
    user_id: Optional[str] = Field(None, alias="userId")
    store_name: Optional[str] = Field(None, alias="storeName")
    affiliate_link: Optional[str] = Field(None, alias="affiliateLink")
    product_id: Optional[int] = Field(None, alias="productId")


class AffiliateDelete(CamelModel):
    id: Optional[int] = None
    user_id: Optional[str] = Field(None, alias="userId")


# AutoDS token
class TokenUpdate(CamelModel):
    refresh_token: Optional[str] = Field(None, alias="refreshToken")


# Amazon Schemas
class AmazonImportRequest(CamelModel):
    input: Optional[str] = None
    user_id: Optional[str] = Field(None, alias="userId")
    country: str = "AU"
    fetch_variants: bool = Field(True, alias="fetchVariants")
    accurate_stock: bool = Field(True, alias="accurateStock")
    max_variants: int = Field(999, alias="maxVariants")


class CsvImportRequest(AmazonImportRequest):
    csv_data: Optional[str] = Field(None, alias="csvData")
    products: Optional[List[Dict[str, Any]]] = None


class CsvImportCancel(CamelModel):
    session_id: Optional[int] = Field(None, alias="sessionId")


class BulkUpdateRequest(CamelModel):
    user_id: Optional[str] = Field(None, alias="userId")
    country: str = "AU"
    limit: int = 50
    target_status: str = Field("all", alias="targetStatus")


class SingleUpdateRequest(CamelModel):
    product_id: Optional[int] = Field(None, alias="productId")
    asin: Optional[str] = None
    user_id: Optional[str] = Field(None, alias="userId")
    country: Optional[str] = None
    fetch_variants: bool = Field(True, alias="fetchVariants")
    accurate_stock: bool = Field(True, alias="accurateStock")
    max_variants: int = Field(999, alias="maxVariants")


class DeleteAllRequest(CamelModel):
    user_id: Optional[str] = Field(None, alias="userId")
    confirm_delete: Optional[str] = Field(None, alias="confirmDelete")


class SPExchangeRequest(BaseModel):
    code: Optional[str] = None
    marketplace: str = "au"


# Kogan Schemas
class KoganScrapeRequest(CamelModel):
    input: Optional[str] = None
    user_id: Optional[str] = Field(None, alias="userId")
    mode: str = "single"


class KoganImportRequest(CamelModel):
    user_id: Optional[str] = Field(None, alias="userId")
    inputs: List[str] = Field(default_factory=list)
    max_products: int = Field(1000, alias="maxProducts")
    continuous_mode: bool = Field(True, alias="continuousMode")


class KoganUpdateRequest(CamelModel):
    user_id: Optional[str] = Field(None, alias="userId")
    product_ids: Optional[List[int]] = Field(None, alias="productIds")


class KoganDeleteRequest(CamelModel):
    user_id: Optional[str] = Field(None, alias="userId")
    product_id: Optional[int] = Field(None, alias="productId")
    product_ids: Optional[List[int]] = Field(None, alias="productIds")


# Notification Schemas
class NotificationCreate(BaseModel):
    title: Optional[str] = None
    message: Optional[str] = None
    type: str = "info"
    target_type: str = "all"
    target_users: List[str] = Field(default_factory=list)
    image_url: Optional[str] = None
    action_type: str = "none"
    action_value: Optional[str] = None
    scheduled_at: Optional[str] = None
    expires_at: Optional[str] = None
    send_immediately: bool = False


class NotificationUpdate(BaseModel):
    title: Optional[str] = None
    message: Optional[str] = None
    type: Optional[str] = None
    image_url: Optional[str] = None
    action_type: Optional[str] = None
    action_value: Optional[str] = None
    scheduled_at: Optional[str] = None
    expires_at: Optional[str] = None
    status: Optional[str] = None
    send_immediately: bool = Field(False, alias="send_now")
    resend_notification: bool = False

    model_config = ConfigDict(populate_by_name=True)


class DeviceRegistration(CamelModel):
    user_id: Optional[str] = Field(None, alias="userId")
    push_token: Optional[str] = Field(None, alias="pushToken")
    platform: Optional[str] = None
    device_info: Dict[str, Any] = Field(default_factory=dict, alias="deviceInfo")
