from conftest import NOW, expiry

from inventory import InventoryStore
from schemas import AVAILABLE, CLAIMED, EXPIRED, Medicine


def make_lot(store, donor_id="d1", name="Paracetamol", quantity=2, days=30, **kwargs):
    return store.create(Medicine(name=name, expiry_date=expiry(days), quantity=quantity, donor_id=donor_id,
                                 created_at=NOW, **kwargs))


def test_create_stamps_defaults(mongo):
    lot = make_lot(InventoryStore(mongo))
    assert lot["status"] == AVAILABLE
    assert lot["claimed_by"] is None
    assert lot["created_at"] == NOW
    assert isinstance(lot["id"], str)


def test_merge_candidate_matches_donor_name_and_expiry(mongo):
    store = InventoryStore(mongo)
    lot = make_lot(store)

    assert store.find_merge_candidate("d1", "Paracetamol", expiry(30))["id"] == lot["id"]
    assert store.find_merge_candidate("d2", "Paracetamol", expiry(30)) is None
    assert store.find_merge_candidate("d1", "Paracetamol", expiry(31)) is None
    assert store.find_merge_candidate("d1", "Ibuprofen", expiry(30)) is None


def test_merge_candidate_ignores_claimed_lots(mongo):
    store = InventoryStore(mongo)
    lot = make_lot(store)
    store.claim(lot["id"], "r1", NOW)

    assert store.find_merge_candidate("d1", "Paracetamol", expiry(30)) is None
    assert store.merge(lot["id"], 3, expiry(30)) is None


def test_query_name_is_case_insensitive_substring(mongo):
    store = InventoryStore(mongo)
    make_lot(store, name="Paracetamol 500mg")
    make_lot(store, name="Vitamin C++")

    assert [lot["name"] for lot in store.query(name="PARACET")] == ["Paracetamol 500mg"]
    assert [lot["name"] for lot in store.query(name="c++")] == ["Vitamin C++"]


def test_query_orders_newest_first_and_filters_expiry(mongo):
    store = InventoryStore(mongo)
    first = make_lot(store, name="A", days=10)
    second = store.create(Medicine(name="B", expiry_date=expiry(40), quantity=1, donor_id="d1",
                                   created_at=NOW.replace(hour=11)))

    assert [lot["id"] for lot in store.query()] == [second["id"], first["id"]]
    assert [lot["id"] for lot in store.query(expiry_before=expiry(20))] == [first["id"]]
    assert [lot["id"] for lot in store.query(expiry_after=expiry(20))] == [second["id"]]


def test_claim_succeeds_once(mongo):
    store = InventoryStore(mongo)
    lot = make_lot(store)

    claimed = store.claim(lot["id"], "r1", NOW)
    assert claimed["status"] == CLAIMED
    assert claimed["claimed_by"] == "r1"
    assert store.claim(lot["id"], "r2", NOW) is None
    assert store.find_by_id(lot["id"])["claimed_by"] == "r1"


def test_claim_refuses_lot_past_expiry(mongo):
    store = InventoryStore(mongo)
    lot = make_lot(store, days=0)

    assert store.claim(lot["id"], "r1", NOW) is None


def test_release_only_for_claimer(mongo):
    store = InventoryStore(mongo)
    lot = make_lot(store)
    store.claim(lot["id"], "r1", NOW)

    assert store.release(lot["id"], "r2") is None
    released = store.release(lot["id"], "r1")
    assert released["status"] == AVAILABLE
    assert "claimed_by" not in released
    assert "claimed_at" not in released


def test_consume_one_decrements_and_expires_last_unit(mongo):
    store = InventoryStore(mongo)
    lot = make_lot(store, quantity=2)
    store.claim(lot["id"], "r1", NOW)

    after = store.consume_one(lot["id"], "r1")
    assert (after["quantity"], after["status"]) == (1, CLAIMED)

    after = store.consume_one(lot["id"], "r1")
    assert (after["quantity"], after["status"]) == (0, EXPIRED)

    assert store.consume_one(lot["id"], "r1") is None


def test_consume_one_requires_claim(mongo):
    store = InventoryStore(mongo)
    lot = make_lot(store)

    assert store.consume_one(lot["id"], "r1") is None
    assert store.find_by_id(lot["id"])["quantity"] == 2


def test_expire_is_conditional_on_status(mongo):
    store = InventoryStore(mongo)
    lot = make_lot(store)

    assert store.expire(lot["id"], CLAIMED) is False
    assert store.expire(lot["id"], AVAILABLE) is True
    assert store.expire(lot["id"], AVAILABLE) is False


def test_find_stale_covers_past_expiry_and_empty_stock(mongo):
    store = InventoryStore(mongo)
    past = make_lot(store, name="Old", days=-1)
    empty = make_lot(store, name="Empty", quantity=0)
    make_lot(store, name="Fresh")

    assert {lot["id"] for lot in store.find_stale(NOW)} == {past["id"], empty["id"]}


def test_update_respects_expected_fields(mongo):
    store = InventoryStore(mongo)
    lot = make_lot(store)

    assert store.update(lot["id"], {"quantity": 5}, expected={"quantity": 3}) is None
    assert store.update(lot["id"], {"quantity": 5}, expected={"quantity": 2})["quantity"] == 5


def test_count_by_status(mongo):
    store = InventoryStore(mongo)
    make_lot(store, name="A")
    claimed = make_lot(store, name="B")
    store.claim(claimed["id"], "r1", NOW)

    assert store.count() == 2
    assert store.count({"status": AVAILABLE}) == 1
    assert store.count({"status": CLAIMED}) == 1
