"""Shared fixtures: throw-away SQLite databases and fake downstream services."""

import asyncio
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from inventory_service import queries as inventory_queries
from inventory_service.db import init_db as init_inventory_db
from inventory_service.db import inventory as inventory_table
from order_service.db import init_db as init_order_db
from order_service.errors import (
    InsufficientStock,
    ProductNotFound,
    ProductNotInInventory,
    ServiceUnavailable,
    UnconfirmedReservation,
)
from order_service.orchestrator import OrderSagaOrchestrator
from order_service.schemas import Product


@pytest_asyncio.fixture
async def inventory_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'inventory.db'}")
    await init_inventory_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def inventory_sessions(inventory_engine):
    return sessionmaker(inventory_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def order_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    await init_order_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def order_sessions(order_engine):
    return sessionmaker(order_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def add_stock(inventory_sessions):
    """Insert an inventory row, as the external seeding step would."""

    async def _add(product_id: str, stock: int, reserved: int = 0) -> None:
        async with inventory_sessions() as session:
            async with session.begin():
                await session.execute(
                    insert(inventory_table).values(
                        product_id=product_id,
                        stock_quantity=stock,
                        reserved_quantity=reserved,
                        version=0,
                    )
                )

    return _add


@pytest.fixture
def availability(inventory_sessions):
    async def _get(product_id: str):
        async with inventory_sessions() as session:
            return await inventory_queries.get_availability(session, product_id)

    return _get


class FakeProducts:
    def __init__(self, prices: dict[str, str]):
        self.prices = prices
        self.unavailable = False

    async def get_product(self, product_id: str) -> Product:
        if self.unavailable:
            raise ServiceUnavailable("Product service")
        if product_id not in self.prices:
            raise ProductNotFound(product_id)
        return Product(id=product_id, price=Decimal(self.prices[product_id]))


class FakeInventory:
    """In-memory stand-in for the inventory ledger."""

    def __init__(self, stock: dict[str, int]):
        self.stock = dict(stock)
        self.reserved = {product_id: 0 for product_id in stock}
        self.calls: list[tuple[str, str, int]] = []
        self.fail_release = False
        self.before_reserve = None
        self.unreadable_reply = False

    def available(self, product_id: str) -> int:
        return self.stock[product_id] - self.reserved[product_id]

    async def reserve(self, product_id: str, quantity: int) -> int:
        self.calls.append(("reserve", product_id, quantity))
        if self.before_reserve:
            await self.before_reserve()
        if product_id not in self.stock:
            raise ProductNotInInventory(product_id)
        if self.available(product_id) < quantity:
            raise InsufficientStock(self.available(product_id), quantity)
        self.reserved[product_id] += quantity
        if self.unreadable_reply:
            raise UnconfirmedReservation(product_id)
        return self.available(product_id)

    async def release(self, product_id: str, quantity: int) -> None:
        self.calls.append(("release", product_id, quantity))
        if self.fail_release:
            raise ServiceUnavailable("Inventory service")
        self.reserved[product_id] -= quantity


class FakePublisher:
    def __init__(self):
        self.published = []
        self.fail_with: BaseException | None = None
        self.block = False
        self.started = asyncio.Event()

    async def publish(self, event) -> str:
        self.started.set()
        if self.block:
            await asyncio.Event().wait()
        if self.fail_with:
            raise self.fail_with
        self.published.append(event)
        return f"{len(self.published)}-0"


@pytest.fixture
def products():
    return FakeProducts({"p1": "9.99", "p2": "0.10"})


@pytest.fixture
def inventory():
    return FakeInventory({"p1": 10, "p2": 3})


@pytest.fixture
def publisher():
    return FakePublisher()


@pytest.fixture
def saga(order_sessions, products, inventory, publisher):
    return OrderSagaOrchestrator(order_sessions, products, inventory, publisher)
