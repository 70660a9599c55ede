# routers.py
import math
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, HTTPException, status

from services import supabase
from schemas import (
    ProductCreate, ProductUpdate,
    BannerCreate, BannerUpdate, BannerReorder,
    AffiliateCreate, AffiliateDelete,
)
from utils import manual_autods_id, now_iso


router = APIRouter()


@router.get("/")
def read_root():
    return {"message": "Marketplace back-office API"}


def _fetch_one(table: str, row_id, columns: str = "*"):
    res = supabase.table(table).select(columns).eq("id", row_id).maybe_single().execute()
    if not res or not res.data:
        return None
    return res.data


# --- Product Endpoints ---

@router.get("/api/products", tags=["Products"])
async def get_products(
    page: int = 1,
    limit: int = 20,
    search: Optional[str] = None,
    status: Optional[int] = 2,
    sort_by: str = "modified_at",
    sort_order: str = "desc",
):
    try:
        query = supabase.table("products").select("*", count="exact")

        if status:
            query = query.eq("status", status)

        if search:
            query = query.or_(f"title.ilike.%{search}%,description.ilike.%{search}%,sku.ilike.%{search}%")

        start = (page - 1) * limit
        res = query.order(sort_by, desc=sort_order != "asc").range(start, start + limit - 1).execute()
        total = res.count or 0

        return {
            "success": True,
            "products": res.data or [],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit) if limit else 0,
                "hasMore": page * limit < total,
            },
        }
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/api/products", status_code=201, tags=["Products"])
async def create_product(product: ProductCreate):
    if not product.title or not product.price:
        raise HTTPException(status_code=400, detail="Missing required fields: title, price")

    try:
        millis = int(datetime.now(timezone.utc).timestamp() * 1000)
        product_data = {
            "autods_id": manual_autods_id(),
            "title": product.title,
            "description": product.description,
            "price": product.price,
            "quantity": product.quantity or 0,
            "sku": product.sku or f"SKU_{millis}",
            "main_picture_url": product.main_picture_url,
            "images": product.images,
            "tags": product.tags,
            "shipping_price": product.shipping_price or 0,
            "status": product.status,
            "created_date": now_iso(),
            "modified_at": now_iso(),
            "sold_count": 0,
            "total_profit": 0,
        }

        res = supabase.table("products").insert(product_data).execute()
        return {"success": True, "product": res.data[0], "message": "Product created successfully"}
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/api/products/{product_id}", tags=["Products"])
async def get_product(product_id: int):
    try:
        product = _fetch_one("products", product_id)
        if not product:
            raise HTTPException(status_code=404, detail="Product not found")
        return {"success": True, "product": product}
    except Exception as e:
        if isinstance(e, HTTPException): raise e
        raise HTTPException(status_code=500, detail=str(e))


@router.put("/api/products/{product_id}", tags=["Products"])
async def update_product(product_id: int, product_update: ProductUpdate):
    try:
        update_data = product_update.model_dump(exclude_unset=True)
        update_data["modified_at"] = now_iso()

        res = supabase.table("products").update(update_data).eq("id", product_id).execute()
        if not res.data:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found")
        return {"success": True, "product": res.data[0], "message": "Product updated successfully"}
    except Exception as e:
        if isinstance(e, HTTPException): raise e
        raise HTTPException(status_code=500, detail=str(e))


@router.delete("/api/products/{product_id}", tags=["Products"])
async def delete_product(product_id: int):
    try:
        res = supabase.table("products").delete().eq("id", product_id).execute()
        if not res.data:
            raise HTTPException(status_code=404, detail="Product not found")
        return {"success": True, "message": "Product deleted successfully"}
    except Exception as e:
        if isinstance(e, HTTPException): raise e
        raise HTTPException(status_code=500, detail=str(e))


# --- Banner Endpoints ---

@router.get("/api/banners", tags=["Banners"])
async def get_banners(active_only: bool = False):
    try:
        query = supabase.table("banners").select("*")

        if active_only:
            now = now_iso()
            query = (
                query.eq("is_active", True)
                .or_(f"start_date.is.null,start_date.lte.{now}")
                .or_(f"end_date.is.null,end_date.gte.{now}")
            )

        res = query.order("display_order").order("created_at", desc=True).execute()
        return {"success": True, "banners": res.data or []}
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/api/banners", status_code=201, tags=["Banners"])
async def create_banner(banner: BannerCreate):
    if not banner.title or not banner.image_url:
        raise HTTPException(status_code=400, detail="Missing required fields: title, image_url")

    try:
        banner_data = banner.model_dump()
        banner_data["created_at"] = now_iso()
        banner_data["updated_at"] = now_iso()

        res = supabase.table("banners").insert(banner_data).execute()
        return {"success": True, "banner": res.data[0], "message": "Banner created successfully"}
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


# declared before /{banner_id} so "reorder" is not parsed as an id
@router.put("/api/banners/reorder", tags=["Banners"])
async def reorder_banners(payload: BannerReorder):
    try:
        updated = []
        for item in payload.banner_orders:
            res = supabase.table("banners").update({
                "display_order": item.display_order,
                "updated_at": now_iso(),
            }).eq("id", item.id).execute()
            updated.extend(res.data or [])

        return {"success": True, "banners": updated, "message": "Banner order updated successfully"}
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/api/banners/{banner_id}", tags=["Banners"])
async def get_banner(banner_id: int):
    try:
        banner = _fetch_one("banners", banner_id)
        if not banner:
            raise HTTPException(status_code=404, detail="Banner not found")
        return {"success": True, "banner": banner}
    except Exception as e:
        if isinstance(e, HTTPException): raise e
        raise HTTPException(status_code=500, detail=str(e))


@router.put("/api/banners/{banner_id}", tags=["Banners"])
async def update_banner(banner_id: int, banner_update: BannerUpdate):
    try:
        update_data = banner_update.model_dump(exclude_unset=True)
        update_data["updated_at"] = now_iso()

        res = supabase.table("banners").update(update_data).eq("id", banner_id).execute()
        if not res.data:
            raise HTTPException(status_code=404, detail="Banner not found")
        return {"success": True, "banner": res.data[0], "message": "Banner updated successfully"}
    except Exception as e:
        if isinstance(e, HTTPException): raise e
        raise HTTPException(status_code=500, detail=str(e))


@router.delete("/api/banners/{banner_id}", tags=["Banners"])
async def delete_banner(banner_id: int):
    try:
        res = supabase.table("banners").delete().eq("id", banner_id).execute()
        if not res.data:
            raise HTTPException(status_code=404, detail="Banner not found")
        return {"success": True, "message": "Banner deleted successfully"}
    except Exception as e:
        if isinstance(e, HTTPException): raise e
        raise HTTPException(status_code=500, detail=str(e))


# --- Affiliate Link Endpoints ---

AFFILIATE_PRODUCT_COLUMNS = (
    "id, internal_sku, supplier_asin, title, brand, category, image_urls, description, "
    "supplier_price, our_price, stock_status, stock_quantity, rating_average, rating_count"
)


@router.post("/api/affiliate/create", tags=["Affiliate"])
async def create_affiliate_link(link: AffiliateCreate):
    if not link.user_id or not link.store_name or not link.affiliate_link or not link.product_id:
        raise HTTPException(status_code=400, detail="Missing required fields")

    try:
        res = supabase.table("affiliate_links").insert({
            "user_id": link.user_id,
            "store_name": link.store_name,
            "affiliate_link": link.affiliate_link,
            "product_id": link.product_id,
        }).execute()
        return {"success": True, "data": res.data[0]}
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/api/affiliate/get-all", tags=["Affiliate"])
async def get_affiliate_links(userId: Optional[str] = None):
    if not userId:
        raise HTTPException(status_code=400, detail="userId required")

    try:
        res = (
            supabase.table("affiliate_links")
            .select(f"id, store_name, affiliate_link, is_active, created_at, products({AFFILIATE_PRODUCT_COLUMNS})")
            .eq("user_id", userId)
            .eq("is_active", True)
            .order("created_at", desc=True)
            .execute()
        )
        data = res.data or []
        return {"success": True, "count": len(data), "data": data}
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.delete("/api/affiliate/delete", tags=["Affiliate"])
async def delete_affiliate_link(payload: AffiliateDelete):
    if not payload.id or not payload.user_id:
        raise HTTPException(status_code=400, detail="id and userId required")

    try:
        supabase.table("affiliate_links").delete().eq("id", payload.id).eq("user_id", payload.user_id).execute()
        return {"success": True, "message": "Deleted successfully"}
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
