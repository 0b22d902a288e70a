"""Warehouse network: listing, CRUD, staff, operations and performance metrics."""

from app.core.security import PERMISSIONS, Grant
from app.events.outbox import OutboxEvent
from services.warehouse import service

ADMIN = [Grant(warehouse="ALL", role="ADMIN", perms=list(PERMISSIONS))]


def test_list_filters_and_metadata(db_session, warehouses):
    result = service.list_warehouses(db_session, region="JAPAN")
    assert result.success
    assert [w["code"] for w in result.data["warehouses"]] == ["JP-01"]
    assert result.data["total"] == 1
    assert result.data["metadata"]["active_warehouses"] == 4
    assert result.data["metadata"]["total_capacity"] == 4000

    page = service.list_warehouses(db_session, limit=2, sort_by="code")
    assert page.data["has_more"] is True
    assert [w["code"] for w in page.data["warehouses"]] == ["AU-01", "EU-01"]


def test_list_rejects_bad_paging(db_session, warehouses):
    assert service.list_warehouses(db_session, page=0).code == "VALIDATION_ERROR"
    assert service.list_warehouses(db_session, limit=500).code == "VALIDATION_ERROR"
    assert service.list_warehouses(db_session, sort_by="password").code == "VALIDATION_ERROR"


def test_search_matches_location(db_session, warehouses):
    result = service.list_warehouses(db_session, search="osaka")
    assert [w["code"] for w in result.data["warehouses"]] == ["JP-01"]


def test_create_duplicate_code_conflicts(db_session, warehouses):
    data = {"code": "US-WEST-01", "name": "Dup", "region": "US_WEST"}
    assert service.create_warehouse(db_session, access=ADMIN, data=data, user_id=None).code == "CONFLICT"
    bad_region = {"code": "MX-01", "name": "Monterrey", "region": "MEXICO"}
    assert service.create_warehouse(db_session, access=ADMIN, data=bad_region, user_id=None).code == "VALIDATION_ERROR"


def test_get_warehouse_reports_utilization(db_session, stock, warehouses):
    result = service.get_warehouse(db_session, warehouses["US_WEST"].id)
    assert result.success
    assert result.data["current_capacity"] == 250
    assert result.data["capacity_utilization"] == 25.0
    assert result.data["region_code"] == "US"


def test_update_warehouse_status(db_session, warehouses):
    wh = warehouses["EU_GERMANY"]
    result = service.update_warehouse(db_session, wh.id, access=ADMIN, changes={"status": "MAINTENANCE"}, user_id=None)
    assert result.data["status"] == "MAINTENANCE"
    bad = service.update_warehouse(db_session, wh.id, access=ADMIN, changes={"status": "CLOSED"}, user_id=None)
    assert bad.code == "VALIDATION_ERROR"


def test_operations_lifecycle(db_session, warehouses):
    wh = warehouses["US_WEST"]
    created = service.create_operation(db_session, wh.id, access=ADMIN, type="INVENTORY_SYNC", user_id="u1",
                                       details={"source": "ERP"})
    assert created.success
    op = created.data
    assert op["status"] == "PENDING"
    assert op["details"]["region"] == "US_WEST"
    assert db_session.query(OutboxEvent).filter(OutboxEvent.topic == "WarehouseOperationQueued").count() == 1

    done = service.update_operation_status(db_session, op["id"], access=ADMIN, status="COMPLETED")
    assert done.data["completed_at"] is not None
    again = service.update_operation_status(db_session, op["id"], access=ADMIN, status="FAILED")
    assert again.code == "VALIDATION_ERROR"

    db_session.refresh(wh)
    assert wh.operations_count == 1


def test_operation_refused_in_inactive_warehouse(db_session, warehouses):
    wh = warehouses["AUSTRALIA"]
    wh.status = "INACTIVE"
    db_session.commit()
    result = service.create_operation(db_session, wh.id, access=ADMIN, type="RECEIVING", user_id=None)
    assert result.code == "VALIDATION_ERROR"


def test_staff_roster(db_session, warehouses):
    wh = warehouses["JAPAN"]
    service.add_staff(db_session, wh.id, access=ADMIN, name="Yui", role="LEAD")
    service.add_staff(db_session, wh.id, access=ADMIN, name="Aki", status="ON_LEAVE")
    names = [s["name"] for s in service.list_staff(db_session, wh.id).data]
    assert names == ["Aki", "Yui"]


def test_performance_metrics(db_session, stock, warehouses):
    wh = warehouses["US_WEST"]
    ok = service.create_operation(db_session, wh.id, access=ADMIN, type="RECEIVING", user_id=None).data
    failed = service.create_operation(db_session, wh.id, access=ADMIN, type="SHIPPING", user_id=None).data
    service.update_operation_status(db_session, ok["id"], access=ADMIN, status="COMPLETED")
    service.update_operation_status(db_session, failed["id"], access=ADMIN, status="FAILED", error="Dock closed")

    result = service.get_performance_metrics(db_session, wh.id)
    assert result.success, result.error
    data = result.data
    assert data["operations"]["total_operations"] == 2
    assert data["operations"]["success_rate"] == 50.0
    assert data["inventory"]["total_items"] == 2
    assert data["capacity"]["utilization_rate"] == 25.0
    assert 0 <= data["overall_score"] <= 100
    assert data["trends"]["operations_trend"] == "+100%"
    assert {r["type"] for r in data["recommendations"]} == {"OPERATIONS"}


def test_unknown_warehouse_is_not_found(db_session):
    assert service.get_warehouse(db_session, "nope").code == "NOT_FOUND"
    assert service.get_performance_metrics(db_session, "nope").code == "NOT_FOUND"


def test_region_grant_limits_warehouse_changes(db_session, warehouses):
    japan_only = [Grant(warehouse="JAPAN", role="MANAGER", perms=["MANAGE_WAREHOUSE", "UPDATE_INVENTORY"])]
    us, jp = warehouses["US_WEST"], warehouses["JAPAN"]

    denied = service.update_warehouse(db_session, us.id, access=japan_only, changes={"status": "MAINTENANCE"},
                                      user_id=None)
    assert denied.code == "PERMISSION_DENIED"
    db_session.refresh(us)
    assert us.status == "ACTIVE"

    moved = service.update_warehouse(db_session, jp.id, access=japan_only, changes={"region": "US_WEST"}, user_id=None)
    assert moved.code == "PERMISSION_DENIED"
    assert service.add_staff(db_session, us.id, access=japan_only, name="Kai").code == "PERMISSION_DENIED"
    assert service.create_operation(db_session, us.id, access=japan_only, type="RECEIVING",
                                    user_id=None).code == "PERMISSION_DENIED"
    new = {"code": "US-WEST-09", "name": "Sparks", "region": "US_WEST"}
    assert service.create_warehouse(db_session, access=japan_only, data=new, user_id=None).code == "PERMISSION_DENIED"

    own = service.create_operation(db_session, jp.id, access=japan_only, type="RECEIVING", user_id=None)
    assert own.success
    us_op = service.create_operation(db_session, us.id, access=ADMIN, type="RECEIVING", user_id=None).data
    blocked = service.update_operation_status(db_session, us_op["id"], access=japan_only, status="COMPLETED")
    assert blocked.code == "PERMISSION_DENIED"
