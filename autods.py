import logging
import time

import requests

from services import (
    AUTODS_CLIENT_ID,
    AUTODS_REFRESH_TOKEN,
    AUTODS_SITE_ID,
    AUTODS_STORE_ID,
    supabase,
)

logger = logging.getLogger(__name__)

AUTODS_AUTH_URL = "https://auth.autods.com/oauth2/token"
AUTODS_API_URL = "https://platform-api.autods.com/products"
TOKEN_SETTING_KEY = "autods_refresh_token"


class AutoDSError(Exception):
    pass


def get_stored_refresh_token():
    res = (
        supabase.table("app_settings")
        .select("value, updated_at")
        .eq("key", TOKEN_SETTING_KEY)
        .maybe_single()
        .execute()
    )
    if not res or not res.data:
        return None
    return res.data


def resolve_refresh_token():
    """Refresh token saved from the dashboard wins over the environment one."""
    try:
        stored = get_stored_refresh_token()
    except Exception as e:
        logger.warning("Could not read stored AutoDS token: %s", e)
        stored = None

    if stored and stored.get("value"):
        return stored["value"]
    return AUTODS_REFRESH_TOKEN


class AutoDSClient:
    def __init__(self, refresh_token, store_id=AUTODS_STORE_ID, site_id=AUTODS_SITE_ID):
        self.refresh_token = refresh_token
        self.store_id = store_id
        self.site_id = site_id
        self.access_token = None
        self.max_retries = 3

    def _headers(self):
        return {
            "Authorization": f"Bearer {self.access_token}",
            "content-type": "application/json",
        }

    def _ensure_token(self):
        if not self.access_token:
            self.get_access_token()

    def get_access_token(self):
        if not self.refresh_token:
            raise AutoDSError("AUTODS_REFRESH_TOKEN environment variable is not set")

        logger.info("Requesting AutoDS access token")
        res = requests.post(
            AUTODS_AUTH_URL,
            data={
                "grant_type": "refresh_token",
                "client_id": AUTODS_CLIENT_ID,
                "refresh_token": self.refresh_token,
            },
            headers={"cache-control": "no-cache"},
            timeout=15,
        )

        if res.status_code == 400:
            raise AutoDSError(
                "Invalid AutoDS refresh token. Please check your AUTODS_REFRESH_TOKEN environment variable."
            )
        if res.status_code != 200:
            raise AutoDSError(f"Failed to get access token ({res.status_code})")

        self.access_token = res.json().get("id_token")
        if not self.access_token:
            raise AutoDSError("Failed to get access token: no id_token returned")
        return self.access_token

    def fetch_products(self, offset=0, limit=500):
        """
        Page through the whole store listing.

        Raises AutoDSError rather than returning a partial catalog: callers
        delete rows missing from the result.
        """
        self._ensure_token()

        all_results = []
        current_offset = offset
        retries = 0

        while True:
            body = {
                "filters": [{
                    "name": "variations.active_buy_item.site_id",
                    "value_list": [int(self.site_id)],
                    "op": "in",
                    "value_type": "list_int",
                }],
                "product_status": 2,
                "limit": limit,
                "offset": current_offset,
            }

            try:
                res = requests.post(
                    f"{AUTODS_API_URL}/{self.store_id}/list/",
                    json=body,
                    headers=self._headers(),
                    timeout=30,
                )
            except requests.RequestException as e:
                raise AutoDSError(f"Error fetching products at offset {current_offset}: {e}")

            if res.status_code in (401, 429) and retries >= self.max_retries:
                raise AutoDSError(
                    f"Giving up at offset {current_offset} after {retries} retries (HTTP {res.status_code})"
                )

            if res.status_code == 429:
                retries += 1
                logger.info("Rate limited, waiting 5 seconds...")
                time.sleep(5)
                continue

            if res.status_code == 401:
                retries += 1
                logger.info("Token expired, re-authenticating...")
                self.access_token = None
                self.get_access_token()
                continue

            if res.status_code != 200:
                raise AutoDSError(f"Error fetching products at offset {current_offset}: HTTP {res.status_code}")

            retries = 0
            results = res.json().get("results") or []
            all_results.extend(results)
            logger.info("Fetched %s products at offset %s", len(results), current_offset)

            if len(results) < limit:
                break
            current_offset += limit

            # avoid rate limiting between pages
            time.sleep(1)

        return all_results

    def get_all_products(self):
        products = self.fetch_products()
        logger.info("Successfully fetched %s total products", len(products))
        return products

    def get_product(self, product_id):
        self._ensure_token()
        res = requests.get(
            f"{AUTODS_API_URL}/{self.store_id}/{product_id}/",
            headers=self._headers(),
            timeout=15,
        )
        if res.status_code != 200:
            raise AutoDSError(f"Error fetching product {product_id} ({res.status_code})")
        return res.json()

    def update_product_quantity(self, product_id, quantity):
        self._ensure_token()
        res = requests.patch(
            f"{AUTODS_API_URL}/{self.store_id}/{product_id}/",
            json={"quantity": quantity},
            headers=self._headers(),
            timeout=15,
        )
        if res.status_code != 200:
            raise AutoDSError(f"Error updating product {product_id} quantity ({res.status_code})")
        return res.json()

    def bulk_update_products(self, updates):
        self._ensure_token()

        results = []
        for update in updates:
            try:
                data = self.update_product_quantity(update["id"], update["quantity"])
                results.append({"id": update["id"], "success": True, "data": data})
            except AutoDSError as e:
                results.append({"id": update["id"], "success": False, "error": str(e)})
            time.sleep(0.2)

        return results
