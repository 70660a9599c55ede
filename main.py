# main.py
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from routers import router as api_router
from sync_routers import router as sync_router
from amazon_routers import router as amazon_router
from kogan_routers import router as kogan_router
from notification_routers import router as notification_router

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

app = FastAPI(title="Marketplace Back-Office API")

# --- CORS Middleware ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


app.include_router(api_router)
app.include_router(sync_router)
app.include_router(amazon_router)
app.include_router(kogan_router)
app.include_router(notification_router)
