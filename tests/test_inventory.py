"""Inventory service: updates, bulk sync, transfers, dashboard and alerts."""

from app.core.security import Grant
from app.db.models.inventory import InventoryAlert, InventoryMovement, InventoryTransfer
from app.events.outbox import OutboxEvent
from services.inventory import service


def test_derive_status_thresholds():
    assert service.derive_status(0, 50, 500) == "OUT_OF_STOCK"
    assert service.derive_status(50, 50, 500) == "LOW_STOCK"
    assert service.derive_status(51, 50, 500) == "IN_STOCK"
    assert service.derive_status(501, 50, 500) == "OVERSTOCK"
    # No max level configured means no overstock
    assert service.derive_status(10_000, 50, 0) == "IN_STOCK"


def test_update_below_minimum_records_delta_and_one_alert(db_session, stock, full_access, admin):
    item = stock["us_6ah"]
    result = service.update_inventory(
        db_session,
        warehouse_id=item.warehouse_id,
        product_id=item.product_id,
        quantity=30,
        reason="Cycle count correction",
        access=full_access,
        user_id=admin.id,
    )
    assert result.success, result.error
    data = result.data
    assert data["item"]["quantity"] == 30
    assert data["item"]["status"] == "LOW_STOCK"
    assert data["movement"]["quantity"] == -120
    assert data["movement"]["previous_quantity"] == 150
    assert data["movement"]["type"] == "ADJUSTMENT"
    assert len(data["alerts"]) == 1
    assert data["alerts"][0]["type"] == "LOW_STOCK"
    assert data["alerts"][0]["severity"] == "HIGH"
    assert data["alerts"][0]["suggested_order_quantity"] == 120

    topics = [e.topic for e in db_session.query(OutboxEvent).all()]
    assert "InventoryChanged" in topics
    assert "InventoryLowStock" in topics


def test_update_to_zero_raises_low_and_out_of_stock(db_session, stock, full_access):
    item = stock["us_9ah"]
    result = service.update_inventory(
        db_session, warehouse_id=item.warehouse_id, product_id=item.product_id, quantity=0,
        reason="Damaged pallet", adjustment_type="DAMAGE", access=full_access, user_id=None,
    )
    assert result.success
    assert {a["type"] for a in result.data["alerts"]} == {"LOW_STOCK", "OUT_OF_STOCK"}
    assert result.data["movement"]["type"] == "DAMAGE"


def test_negative_quantity_rejected_before_any_write(db_session, stock, full_access):
    item = stock["us_6ah"]
    result = service.update_inventory(
        db_session, warehouse_id=item.warehouse_id, product_id=item.product_id, quantity=-5,
        reason="typo", access=full_access, user_id=None,
    )
    assert not result.success
    assert result.code == "VALIDATION_ERROR"
    db_session.refresh(item)
    assert item.quantity == 150
    assert db_session.query(InventoryMovement).count() == 0


def test_update_requires_permission_for_region(db_session, stock):
    item = stock["us_6ah"]
    viewer = [Grant(warehouse="US_WEST", role="VIEWER", perms=["VIEW_INVENTORY"])]
    other_region = [Grant(warehouse="JAPAN", role="OPERATOR", perms=["UPDATE_INVENTORY"])]
    for access in (viewer, other_region):
        result = service.update_inventory(
            db_session, warehouse_id=item.warehouse_id, product_id=item.product_id, quantity=10,
            reason="x", access=access, user_id=None,
        )
        assert result.code == "PERMISSION_DENIED"


def test_update_unknown_item_is_not_found(db_session, warehouses, full_access):
    result = service.update_inventory(
        db_session, warehouse_id=warehouses["US_WEST"].id, product_id="missing", quantity=1,
        reason="x", access=full_access, user_id=None,
    )
    assert result.code == "NOT_FOUND"


def test_bulk_update_reports_partial_sync(db_session, stock, full_access):
    us_id = stock["us_6ah"].warehouse_id
    result = service.bulk_update_inventory(
        db_session,
        warehouse_id=us_id,
        updates=[
            {"product_id": stock["us_6ah"].product_id, "quantity": 200},
            {"product_id": stock["us_9ah"].product_id, "quantity": 10},
            {"product_id": "unknown-product", "quantity": 5},
        ],
        reason="Nightly ERP sync",
        source="SYNC",
        access=full_access,
        user_id=None,
    )
    assert result.success
    assert result.data["sync_status"] == "PARTIAL"
    assert result.data["summary"] == {"total_processed": 3, "successful": 2, "failed": 1, "warnings": 1}
    assert result.data["failed"][0]["product_id"] == "unknown-product"
    assert result.warnings == ["DCB609 is below minimum stock level"]
    types = {m.type for m in db_session.query(InventoryMovement).all()}
    assert types == {"SYNC"}


def test_bulk_update_rejects_unknown_source(db_session, stock, full_access):
    result = service.bulk_update_inventory(
        db_session, warehouse_id=stock["us_6ah"].warehouse_id, updates=[{"product_id": "x", "quantity": 1}],
        reason="x", source="FTP", access=full_access, user_id=None,
    )
    assert result.code == "VALIDATION_ERROR"


def test_transfer_reserves_source_stock(db_session, stock, warehouses, full_access):
    src = stock["us_6ah"]
    result = service.transfer_inventory(
        db_session,
        from_warehouse_id=src.warehouse_id,
        to_warehouse_id=warehouses["JAPAN"].id,
        product_id=src.product_id,
        quantity=40,
        reason="Rebalance for Japan launch",
        priority="HIGH",
        access=full_access,
        user_id=None,
    )
    assert result.success, result.error
    assert result.data["transfer"]["status"] == "PENDING"
    assert result.data["source"]["reserved_quantity"] == 40
    assert result.data["source"]["available_quantity"] == 110
    assert result.data["source"]["quantity"] == 150
    assert db_session.query(InventoryTransfer).count() == 1


def test_transfer_over_available_leaves_reservation_unchanged(db_session, stock, warehouses, full_access):
    src = stock["us_6ah"]
    src.reserved_quantity = 100
    db_session.commit()
    result = service.transfer_inventory(
        db_session, from_warehouse_id=src.warehouse_id, to_warehouse_id=warehouses["JAPAN"].id,
        product_id=src.product_id, quantity=60, reason="too much", access=full_access, user_id=None,
    )
    assert result.code == "VALIDATION_ERROR"
    assert result.error == "Insufficient available inventory"
    db_session.refresh(src)
    assert src.reserved_quantity == 100
    assert db_session.query(InventoryTransfer).count() == 0


def test_transfer_to_same_warehouse_rejected(db_session, stock, full_access):
    src = stock["us_6ah"]
    result = service.transfer_inventory(
        db_session, from_warehouse_id=src.warehouse_id, to_warehouse_id=src.warehouse_id,
        product_id=src.product_id, quantity=1, reason="loop", access=full_access, user_id=None,
    )
    assert result.code == "VALIDATION_ERROR"


def test_dashboard_summarizes_stock(db_session, stock, full_access):
    wh_id = stock["us_6ah"].warehouse_id
    service.update_inventory(
        db_session, warehouse_id=wh_id, product_id=stock["us_9ah"].product_id, quantity=20,
        reason="count", access=full_access, user_id=None,
    )
    result = service.get_dashboard(db_session, warehouse_id=wh_id, access=full_access)
    assert result.success
    summary = result.data["summary"]
    assert summary["total_items"] == 2
    assert summary["in_stock"] == 1
    assert summary["low_stock"] == 1
    assert summary["alerts_count"] == 1
    assert summary["total_value"] == 150 * 90 + 20 * 120
    assert result.data["category_breakdown"][0]["category"] == "BATTERIES"
    assert len(result.data["recent_movements"]) == 1
    at_risk = [r["sku"] for r in result.data["predictions"]["next_stockouts"]]
    assert at_risk == ["DCB609"]


def test_dashboard_hidden_without_region_grant(db_session, stock):
    access = [Grant(warehouse="JAPAN", role="VIEWER", perms=["VIEW_INVENTORY"])]
    result = service.get_dashboard(db_session, warehouse_id=stock["us_6ah"].warehouse_id, access=access)
    assert result.code == "PERMISSION_DENIED"


def test_multi_warehouse_view_suggests_transfer(db_session, stock, full_access):
    result = service.get_multi_warehouse_view(db_session, product_id=stock["us_6ah"].product_id, access=full_access)
    assert result.success
    assert result.data["totals"]["quantity"] == 170
    opp = result.data["transfer_opportunities"][0]
    assert opp["from_warehouse_id"] == stock["us_6ah"].warehouse_id
    assert opp["to_warehouse_id"] == stock["jp_6ah"].warehouse_id
    # Japan needs 40 - 20 = 20 to reach its reorder point
    assert opp["suggested_quantity"] == 20


def test_multi_warehouse_view_filters_by_grant(db_session, stock):
    access = [Grant(warehouse="JAPAN", role="VIEWER", perms=["VIEW_INVENTORY"])]
    result = service.get_multi_warehouse_view(db_session, product_id=stock["us_6ah"].product_id, access=access)
    assert [r["region"] for r in result.data["warehouses"]] == ["JAPAN"]


def test_inventory_analytics_groups_movements(db_session, stock, full_access):
    wh_id = stock["us_6ah"].warehouse_id
    for qty in (140, 120):
        service.update_inventory(
            db_session, warehouse_id=wh_id, product_id=stock["us_6ah"].product_id, quantity=qty,
            reason="pick", access=full_access, user_id=None,
        )
    result = service.get_inventory_analytics(db_session, warehouse_id=wh_id, period="WEEKLY", access=full_access)
    assert result.success
    assert result.data["total_movements"] == 2
    assert result.data["movements_by_type"] == [{"type": "ADJUSTMENT", "count": 2, "net_quantity": -30}]
    assert result.data["top_moving_products"][0]["units_moved"] == 30

    bad = service.get_inventory_analytics(db_session, warehouse_id=wh_id, period="HOURLY", access=full_access)
    assert bad.code == "VALIDATION_ERROR"


def test_resolve_alert(db_session, stock, full_access, admin):
    item = stock["us_6ah"]
    service.update_inventory(
        db_session, warehouse_id=item.warehouse_id, product_id=item.product_id, quantity=10,
        reason="count", access=full_access, user_id=None,
    )
    alert = db_session.query(InventoryAlert).first()
    result = service.resolve_alert(db_session, alert_id=alert.id, access=full_access, user_id=admin.id)
    assert result.success
    assert result.data["resolved"] is True
    db_session.refresh(alert)
    assert alert.resolved_by == admin.id


def test_transfer_opportunities_skip_thin_sources():
    rows = [
        {"warehouse_id": "a", "available_quantity": 80, "reorder_point": 60},
        {"warehouse_id": "b", "available_quantity": 5, "reorder_point": 40},
    ]
    # 80 is not above 1.5 x 60, so nothing can be spared
    assert service.transfer_opportunities(rows) == []


def test_update_below_reserved_quantity_rejected(db_session, stock, full_access):
    item = stock["us_6ah"]
    item.reserved_quantity = 100
    db_session.commit()

    result = service.update_inventory(
        db_session, warehouse_id=item.warehouse_id, product_id=item.product_id, quantity=10,
        reason="Recount", access=full_access, user_id=None,
    )
    assert result.code == "VALIDATION_ERROR"
    assert result.error == "Quantity 10 is below the 100 units reserved"
    db_session.refresh(item)
    assert item.quantity == 150
    assert item.available_quantity == 50
    assert db_session.query(InventoryMovement).count() == 0


def test_bulk_update_fails_lines_below_reservation(db_session, stock, full_access):
    item = stock["us_6ah"]
    item.reserved_quantity = 40
    db_session.commit()

    result = service.bulk_update_inventory(
        db_session, warehouse_id=item.warehouse_id,
        updates=[{"product_id": item.product_id, "quantity": 39}],
        reason="Nightly sync", source="SYNC", access=full_access, user_id=None,
    )
    assert result.data["sync_status"] == "FAILED"
    assert result.data["failed"] == [{"product_id": item.product_id,
                                      "error": "Quantity 39 is below the 40 units reserved"}]
    db_session.refresh(item)
    assert item.quantity == 150
