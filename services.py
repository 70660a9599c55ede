# services.py
import os
from typing import Optional

from fastapi import Header, HTTPException
from dotenv import load_dotenv
from supabase import create_client

load_dotenv()

# -------- SUPABASE --------
SUPABASE_URL = os.environ.get("SUPABASE_URL")
SUPABASE_SERVICE_ROLE_KEY = os.environ.get("SUPABASE_SERVICE_ROLE_KEY")

if not SUPABASE_URL or not SUPABASE_SERVICE_ROLE_KEY:
    raise Exception("Supabase env variables missing")

# Admin DB client (server only, bypasses RLS)
supabase = create_client(SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY)


# -------- AUTODS --------
AUTODS_REFRESH_TOKEN = os.environ.get("AUTODS_REFRESH_TOKEN")
AUTODS_CLIENT_ID = os.environ.get("AUTODS_CLIENT_ID", "49ctfpocq0qgdnsg1qv2u432tk")
AUTODS_STORE_ID = os.environ.get("AUTODS_STORE_ID", "493001")
AUTODS_SITE_ID = os.environ.get("AUTODS_SITE_ID", "39")


# -------- AMAZON (scraper API + SP-API) --------
RAPIDAPI_KEY = os.environ.get("RAPIDAPI_KEY")
RAPIDAPI_HOST = os.environ.get("RAPIDAPI_HOST", "amazon-data-scraper-api3.p.rapidapi.com")

SP_API_CLIENT_ID = os.environ.get("SP_API_CLIENT_ID")
SP_API_CLIENT_SECRET = os.environ.get("SP_API_CLIENT_SECRET")
SP_API_REFRESH_TOKEN = os.environ.get("SP_API_REFRESH_TOKEN")
SP_API_ENDPOINT = os.environ.get("SP_API_ENDPOINT", "https://sandbox.sellingpartnerapi-fe.amazon.com")
SP_API_MARKETPLACE_ID = os.environ.get("SP_API_MARKETPLACE_ID", "A39IBJ37TRP1C6")
SP_API_REDIRECT_URI = os.environ.get("SP_API_REDIRECT_URI", "http://localhost:8000/api/amazon/sp-callback")


# -------- PUSH --------
EXPO_PUSH_URL = os.environ.get("EXPO_PUSH_URL", "https://exp.host/--/api/v2/push/send")


# -------- CRON --------
CRON_SECRET = os.environ.get("CRON_SECRET")


def verify_cron_secret(x_cron_secret: Optional[str] = Header(None)):
    # Only enforced when a secret is configured
    if CRON_SECRET and x_cron_secret != CRON_SECRET:
        raise HTTPException(status_code=401, detail="Unauthorized")


def verify_cron_bearer(authorization: Optional[str] = Header(None)):
    if not CRON_SECRET or authorization != f"Bearer {CRON_SECRET}":
        raise HTTPException(status_code=401, detail="Unauthorized")
