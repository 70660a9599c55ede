import logging
from datetime import datetime, timedelta, timezone

import requests

from services import (
    SP_API_CLIENT_ID,
    SP_API_CLIENT_SECRET,
    SP_API_ENDPOINT,
    SP_API_MARKETPLACE_ID,
    SP_API_REDIRECT_URI,
    SP_API_REFRESH_TOKEN,
)

logger = logging.getLogger(__name__)

LWA_TOKEN_URL = "https://api.amazon.com/auth/o2/token"


class SPAPIError(Exception):
    def __init__(self, message, details=None):
        super().__init__(message)
        self.details = details


def _error_details(res):
    try:
        return res.json()
    except ValueError:
        return res.text


def _lwa_request(form):
    try:
        res = requests.post(
            LWA_TOKEN_URL,
            data=form,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=15,
        )
    except requests.RequestException as e:
        raise SPAPIError(f"LWA token request failed: {e}")
    if res.status_code != 200:
        raise SPAPIError(f"LWA token request failed ({res.status_code})", _error_details(res))
    return res.json()


def get_access_token():
    if not SP_API_REFRESH_TOKEN:
        raise SPAPIError("SP_API_REFRESH_TOKEN is not configured")

    data = _lwa_request({
        "grant_type": "refresh_token",
        "refresh_token": SP_API_REFRESH_TOKEN,
        "client_id": SP_API_CLIENT_ID,
        "client_secret": SP_API_CLIENT_SECRET,
    })
    return data.get("access_token")


def exchange_authorization_code(code):
    data = _lwa_request({
        "grant_type": "authorization_code",
        "code": code,
        "client_id": SP_API_CLIENT_ID,
        "client_secret": SP_API_CLIENT_SECRET,
        "redirect_uri": SP_API_REDIRECT_URI,
    })
    return {
        "refresh_token": data.get("refresh_token"),
        "access_token": data.get("access_token"),
        "expires_in": data.get("expires_in"),
    }


def get_orders(days_back=30):
    access_token = get_access_token()
    created_after = datetime.now(timezone.utc) - timedelta(days=days_back)

    try:
        res = requests.get(
            f"{SP_API_ENDPOINT}/orders/v0/orders",
            headers={"x-amz-access-token": access_token},
            params={
                "MarketplaceIds": SP_API_MARKETPLACE_ID,
                "CreatedAfter": created_after.strftime("%Y-%m-%dT%H:%M:%SZ"),
            },
            timeout=30,
        )
    except requests.RequestException as e:
        raise SPAPIError(f"Orders request failed: {e}")
    if res.status_code != 200:
        raise SPAPIError(f"Orders request failed ({res.status_code})", _error_details(res))

    logger.info("Fetched SP-API orders for the last %s days", days_back)
    return res.json()
