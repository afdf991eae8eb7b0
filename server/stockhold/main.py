from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from stockhold.config import CORS_ORIGINS

from .routers import health, inventory, reservations, sales_orders

app = FastAPI(title="Stockhold API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(inventory.router)
app.include_router(reservations.router)
app.include_router(sales_orders.router)


@app.get("/")
def root():
    return {"status": "ok"}
