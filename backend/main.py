import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from core.auth import fastapi_users, auth_backend
from core.config import settings
from db.database import create_db_and_tables
from routers.inventory import router as inventory_router
from routers.loyalty import router as loyalty_router
from routers.orders import router as orders_router
from schemas.users import UserRead, UserCreate, UserUpdate

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await create_db_and_tables()
    yield


app = FastAPI(
    title="Cafe Fulfillment API",
    description="Orders, ingredient stock and loyalty points for the cafe",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Authentication routes (fastapi-users)
app.include_router(fastapi_users.get_auth_router(auth_backend), prefix="/auth/jwt", tags=["auth"])
app.include_router(fastapi_users.get_register_router(UserRead, UserCreate), prefix="/auth", tags=["auth"])
app.include_router(fastapi_users.get_users_router(UserRead, UserUpdate), prefix="/users", tags=["users"])

app.include_router(orders_router, prefix="/orders", tags=["orders"])
app.include_router(inventory_router, prefix="/inventory", tags=["inventory"])
app.include_router(loyalty_router, prefix="/loyalty", tags=["loyalty"])

if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
