import pytest
from sqlmodel import select

from conftest import Customer, Product
from core.sync_types import ChangeType
from services.synced_repository import SyncedRepository


@pytest.fixture
def products(session_factory, queue):
    return SyncedRepository(Product, "products", session_factory, queue)


def test_create_writes_row_and_queue_entry(products, queue):
    created = products.create(id="p1", name="Lamp", price=12.5)

    assert created.updated_at is not None
    (item,) = queue.list_items()
    assert item.change_type is ChangeType.CREATE
    assert item.record_id == "p1"
    assert item.data["name"] == "Lamp"
    assert item.data["price"] == 12.5


def test_update_and_delete_are_queued_in_order(products, queue):
    products.create(id="p1", name="Lamp")
    products.update("p1", price=20)
    assert products.delete("p1") is True

    items = queue.list_items()
    assert [item.change_type for item in items] == [ChangeType.CREATE, ChangeType.UPDATE, ChangeType.DELETE]
    assert items[1].data["price"] == 20
    assert items[2].data["deleted_at"] is not None
    assert products.get("p1").deleted_at is not None


def test_hard_delete_without_deleted_at_column(session_factory, queue):
    customers = SyncedRepository(Customer, "customers", session_factory, queue)
    created = customers.create(name="Ada")

    assert customers.delete(created.id) is True

    assert customers.get(created.id) is None
    last = queue.list_items()[-1]
    assert last.change_type is ChangeType.DELETE
    assert last.record_id == str(created.id)
    assert last.data["name"] == "Ada"


def test_missing_rows(products, queue):
    with pytest.raises(LookupError):
        products.update("nope", name="x")
    assert products.delete("nope") is False
    assert queue.list_items() == []


def test_failed_enqueue_rolls_back_the_domain_write(products, queue, session_factory, monkeypatch):
    def broken_enqueue(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(queue, "enqueue", broken_enqueue)

    with pytest.raises(RuntimeError):
        products.create(id="p1", name="Lamp")

    with session_factory() as session:
        assert session.exec(select(Product)).all() == []


def test_excluded_tables_cannot_be_wrapped(session_factory, queue):
    with pytest.raises(ValueError):
        SyncedRepository(Customer, "company_settings", session_factory, queue)
