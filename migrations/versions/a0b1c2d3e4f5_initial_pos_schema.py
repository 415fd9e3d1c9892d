"""initial pos schema

Revision ID: a0b1c2d3e4f5
Revises:
Create Date: 2026-09-28 09:12:40.118204

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'a0b1c2d3e4f5'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _money(name: str, nullable: bool = False, **kw) -> sa.Column:
    return sa.Column(name, sa.Numeric(12, 2), nullable=nullable, **kw)


def _ts(name: str, nullable: bool = True) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(), nullable=True)
    return sa.Column(name, sa.DateTime(), nullable=False, server_default=sa.func.now())


def _user_fk(name: str) -> sa.Column:
    return sa.Column(name, sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)


def upgrade() -> None:
    """Create every table of the store back office (idempotent)."""
    conn = op.get_bind()
    existing = set(sa.inspect(conn).get_table_names())

    # ---- Core: roles, fleet, users, branches, audit ----
    if "roles" not in existing:
        op.create_table(
            "roles",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("key", sa.String(64), nullable=False, unique=True),
            sa.Column("name", sa.String(128), nullable=False),
            _ts("created_at", nullable=False),
        )

    if "vehicles" not in existing:
        op.create_table(
            "vehicles",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(128), nullable=False),
            sa.Column("type", sa.String(32), nullable=False, server_default="OTHER"),
            sa.Column("capacity_units", sa.Numeric(10, 2), nullable=False, server_default="0"),
            sa.Column("plate_no", sa.String(32), nullable=True),
            sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
            _ts("created_at", nullable=False),
            sa.UniqueConstraint("name", "type", name="uq_vehicle_name_type"),
        )

    if "employees" not in existing:
        op.create_table(
            "employees",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("first_name", sa.String(128), nullable=False),
            sa.Column("last_name", sa.String(128), nullable=False, server_default=""),
            sa.Column("alias", sa.String(128), nullable=True),
            sa.Column("phone", sa.String(20), nullable=True, unique=True),
            sa.Column("role", sa.String(16), nullable=False, server_default="STAFF"),
            sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column(
                "default_vehicle_id", sa.Integer(), sa.ForeignKey("vehicles.id", ondelete="SET NULL"), nullable=True
            ),
            _ts("created_at", nullable=False),
        )

    if "users" not in existing:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("email", sa.String(320), nullable=False, unique=True),
            sa.Column("full_name", sa.String(255), nullable=True),
            sa.Column("password_hash", sa.String(255), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            _ts("created_at", nullable=False),
            sa.Column(
                "employee_id",
                sa.Integer(),
                sa.ForeignKey("employees.id", ondelete="SET NULL"),
                nullable=True,
                unique=True,
            ),
        )

    if "user_roles" not in existing:
        op.create_table(
            "user_roles",
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
            sa.Column("role_id", sa.Integer(), sa.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
        )

    if "branches" not in existing:
        op.create_table(
            "branches",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(128), nullable=False, unique=True),
            sa.Column("address", sa.Text(), nullable=True),
            _ts("created_at", nullable=False),
        )

    if "user_branches" not in existing:
        op.create_table(
            "user_branches",
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
            sa.Column("branch_id", sa.Integer(), sa.ForeignKey("branches.id", ondelete="CASCADE"), primary_key=True),
        )

    if "audit_events" not in existing:
        op.create_table(
            "audit_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            _ts("created_at", nullable=False),
            sa.Column("request_id", sa.String(64), nullable=True),
            _user_fk("actor_user_id"),
            sa.Column("actor_user_email", sa.String(320), nullable=True),
            sa.Column("client_ip", sa.String(64), nullable=True),
            sa.Column("action", sa.String(128), nullable=False),
            sa.Column("entity_type", sa.String(128), nullable=True),
            sa.Column("entity_id", sa.String(128), nullable=True),
            sa.Column("reason", sa.String(512), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.UniqueConstraint("request_id", "id", name="uq_audit_request_id_id"),
        )

    # ---- Catalog & customers ----
    if "products" not in existing:
        op.create_table(
            "products",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("sku", sa.String(64), nullable=True, unique=True),
            _money("price", server_default="0"),
            _money("srp", server_default="0"),
            _money("dealer_price", nullable=True),
            _money("stock", server_default="0"),
            _money("packing_stock", server_default="0"),
            sa.Column("packing_size", sa.Numeric(12, 3), nullable=False, server_default="0"),
            sa.Column("packing_unit", sa.String(32), nullable=True),
            sa.Column("allow_pack_sale", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("description", sa.Text(), nullable=True),
            _ts("created_at", nullable=False),
            _ts("updated_at", nullable=False),
        )
        op.create_index("idx_products_name", "products", ["name"])
        op.create_index("idx_products_active", "products", ["is_active"])

    if "stock_movements" not in existing:
        op.create_table(
            "stock_movements",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("type", sa.String(32), nullable=False),
            sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id", ondelete="CASCADE"), nullable=False),
            _money("qty"),
            sa.Column("unit_kind", sa.String(16), nullable=False, server_default="PACK"),
            sa.Column("ref_kind", sa.String(16), nullable=True),
            sa.Column("ref_id", sa.Integer(), nullable=True),
            sa.Column("note", sa.String(512), nullable=True),
            _ts("created_at", nullable=False),
            _user_fk("created_by_user_id"),
        )
        op.create_index("idx_stock_movements_ref", "stock_movements", ["ref_kind", "ref_id"])
        op.create_index("idx_stock_movements_product", "stock_movements", ["product_id"])

    if "customers" not in existing:
        op.create_table(
            "customers",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("first_name", sa.String(128), nullable=False),
            sa.Column("middle_name", sa.String(128), nullable=True),
            sa.Column("last_name", sa.String(128), nullable=False, server_default=""),
            sa.Column("alias", sa.String(128), nullable=True),
            sa.Column("phone", sa.String(20), nullable=True, unique=True),
            sa.Column("email", sa.String(320), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            _money("credit_limit", nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            _ts("created_at", nullable=False),
            _ts("updated_at", nullable=False),
        )
        op.create_index("idx_customers_last_name", "customers", ["last_name"])
        op.create_index("idx_customers_phone", "customers", ["phone"])

    if "customer_addresses" not in existing:
        op.create_table(
            "customer_addresses",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("customer_id", sa.Integer(), sa.ForeignKey("customers.id", ondelete="CASCADE"), nullable=False),
            sa.Column("label", sa.String(64), nullable=True),
            sa.Column("line1", sa.String(255), nullable=False),
            sa.Column("barangay", sa.String(128), nullable=True),
            sa.Column("city", sa.String(128), nullable=True),
            sa.Column("province", sa.String(128), nullable=True),
            sa.Column("landmark", sa.String(255), nullable=True),
            sa.Column("lat", sa.Numeric(9, 6), nullable=True),
            sa.Column("lng", sa.Numeric(9, 6), nullable=True),
            _ts("created_at", nullable=False),
        )
        op.create_index("ix_customer_addresses_customer_id", "customer_addresses", ["customer_id"])

    if "customer_item_prices" not in existing:
        op.create_table(
            "customer_item_prices",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("customer_id", sa.Integer(), sa.ForeignKey("customers.id", ondelete="CASCADE"), nullable=False),
            sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id", ondelete="CASCADE"), nullable=False),
            sa.Column("unit_kind", sa.String(16), nullable=False),
            sa.Column("mode", sa.String(32), nullable=False),
            sa.Column("value", sa.Numeric(10, 2), nullable=False),
            _ts("starts_at"),
            _ts("ends_at"),
            sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
            _ts("created_at", nullable=False),
            sa.UniqueConstraint(
                "customer_id", "product_id", "unit_kind", "starts_at", "ends_at", name="uq_customer_item_price_window"
            ),
        )
        op.create_index(
            "idx_customer_item_prices_lookup",
            "customer_item_prices",
            ["customer_id", "product_id", "unit_kind", "active"],
        )

    # ---- Orders & cashier shifts ----
    if "orders" not in existing:
        op.create_table(
            "orders",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_code", sa.String(32), nullable=False, unique=True),
            sa.Column("channel", sa.String(16), nullable=False, server_default="PICKUP"),
            sa.Column("status", sa.String(16), nullable=False, server_default="UNPAID"),
            sa.Column("fulfillment_status", sa.String(16), nullable=False, server_default="NEW"),
            sa.Column("customer_id", sa.Integer(), sa.ForeignKey("customers.id", ondelete="SET NULL"), nullable=True),
            sa.Column("customer_name", sa.String(255), nullable=True),
            sa.Column("deliver_to", sa.Text(), nullable=True),
            sa.Column("deliver_phone", sa.String(20), nullable=True),
            sa.Column("deliver_landmark", sa.String(255), nullable=True),
            sa.Column("deliver_lat", sa.Numeric(9, 6), nullable=True),
            sa.Column("deliver_lng", sa.Numeric(9, 6), nullable=True),
            _money("subtotal", server_default="0"),
            _money("total_before_discount", nullable=True),
            sa.Column("is_on_credit", sa.Boolean(), nullable=False, server_default=sa.false()),
            _ts("due_date"),
            sa.Column("receipt_no", sa.String(32), nullable=True, unique=True),
            sa.Column("print_count", sa.Integer(), nullable=False, server_default="0"),
            _ts("printed_at"),
            _ts("locked_at"),
            _user_fk("locked_by_user_id"),
            _ts("released_at"),
            sa.Column("released_approved_by", sa.String(128), nullable=True),
            _ts("stock_deducted_at"),
            sa.Column("origin_run_receipt_id", sa.Integer(), nullable=True, unique=True),
            _ts("expiry_at"),
            _ts("paid_at"),
            _ts("dispatched_at"),
            _ts("delivered_at"),
            _ts("cancelled_at"),
            sa.Column("void_reason", sa.String(512), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            _ts("created_at", nullable=False),
            _ts("updated_at", nullable=False),
            _user_fk("created_by_user_id"),
        )
        op.create_index("idx_orders_status", "orders", ["status"])
        op.create_index("idx_orders_customer", "orders", ["customer_id"])
        op.create_index("idx_orders_created_at", "orders", ["created_at"])

    if "order_items" not in existing:
        op.create_table(
            "order_items",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
            sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
            sa.Column("name", sa.String(255), nullable=False),
            _money("qty"),
            sa.Column("unit_kind", sa.String(16), nullable=True),
            _money("unit_price"),
            _money("line_total", nullable=True),
            _money("allowed_unit_price", nullable=True),
            sa.Column("price_policy", sa.String(64), nullable=True),
            sa.Column("discount_approved_by", sa.String(128), nullable=True),
        )
        op.create_index("ix_order_items_order_id", "order_items", ["order_id"])

    if "cashier_shifts" not in existing:
        op.create_table(
            "cashier_shifts",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("cashier_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
            sa.Column("branch_id", sa.Integer(), sa.ForeignKey("branches.id", ondelete="RESTRICT"), nullable=False),
            sa.Column("status", sa.String(24), nullable=False, server_default="PENDING_ACCEPT"),
            sa.Column("device_id", sa.String(64), nullable=True),
            _ts("opened_at", nullable=False),
            _user_fk("opened_by_id"),
            _money("opening_float", server_default="0"),
            _money("opening_counted", nullable=True),
            sa.Column("opening_dispute_note", sa.Text(), nullable=True),
            _ts("opening_verified_at"),
            _user_fk("opening_verified_by_id"),
            _money("closing_total", nullable=True),
            sa.Column("closing_denoms", sa.JSON(), nullable=True),
            _ts("cashier_submitted_at"),
            _ts("closed_at"),
            _user_fk("final_closed_by_id"),
            sa.Column("notes", sa.Text(), nullable=True),
        )
        op.create_index("idx_cashier_shifts_cashier_status", "cashier_shifts", ["cashier_id", "status"])

    if "payments" not in existing:
        op.create_table(
            "payments",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
            sa.Column("method", sa.String(32), nullable=False, server_default="CASH"),
            _money("amount"),
            _money("tendered", nullable=True),
            _money("change", nullable=True),
            sa.Column("ref_no", sa.String(128), nullable=True),
            sa.Column(
                "shift_id", sa.Integer(), sa.ForeignKey("cashier_shifts.id", ondelete="SET NULL"), nullable=True
            ),
            _user_fk("cashier_id"),
            _ts("created_at", nullable=False),
        )
        op.create_index("idx_payments_order", "payments", ["order_id"])
        op.create_index("idx_payments_shift", "payments", ["shift_id"])

    if "receipt_counters" not in existing:
        op.create_table(
            "receipt_counters",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("counter", sa.Integer(), nullable=False, server_default="0"),
        )

    if "cash_drawer_txns" not in existing:
        op.create_table(
            "cash_drawer_txns",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column(
                "shift_id", sa.Integer(), sa.ForeignKey("cashier_shifts.id", ondelete="CASCADE"), nullable=False
            ),
            sa.Column("type", sa.String(16), nullable=False),
            _money("amount"),
            sa.Column("note", sa.String(512), nullable=True),
            _user_fk("created_by_id"),
            _ts("created_at", nullable=False),
        )
        op.create_index("ix_cash_drawer_txns_shift_id", "cash_drawer_txns", ["shift_id"])

    if "cashier_shift_variances" not in existing:
        op.create_table(
            "cashier_shift_variances",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column(
                "shift_id",
                sa.Integer(),
                sa.ForeignKey("cashier_shifts.id", ondelete="CASCADE"),
                nullable=False,
                unique=True,
            ),
            _money("expected"),
            _money("counted"),
            _money("variance"),
            sa.Column("status", sa.String(24), nullable=False, server_default="OPEN"),
            sa.Column("resolution", sa.String(24), nullable=True),
            sa.Column("paper_ref_no", sa.String(64), nullable=True),
            sa.Column("note", sa.Text(), nullable=True),
            _ts("manager_approved_at"),
            _user_fk("manager_approved_by_id"),
            _ts("resolved_at"),
            _ts("created_at", nullable=False),
        )

    if "cashier_charges" not in existing:
        op.create_table(
            "cashier_charges",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column(
                "variance_id",
                sa.Integer(),
                sa.ForeignKey("cashier_shift_variances.id", ondelete="CASCADE"),
                nullable=False,
                unique=True,
            ),
            sa.Column(
                "shift_id", sa.Integer(), sa.ForeignKey("cashier_shifts.id", ondelete="CASCADE"), nullable=False
            ),
            sa.Column("cashier_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
            _money("amount"),
            sa.Column("status", sa.String(24), nullable=False, server_default="OPEN"),
            sa.Column("note", sa.Text(), nullable=True),
            _user_fk("created_by_id"),
            _ts("created_at", nullable=False),
            _ts("settled_at"),
        )

    if "cashier_charge_payments" not in existing:
        op.create_table(
            "cashier_charge_payments",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column(
                "charge_id", sa.Integer(), sa.ForeignKey("cashier_charges.id", ondelete="CASCADE"), nullable=False
            ),
            _money("amount"),
            sa.Column("method", sa.String(32), nullable=False, server_default="PAYROLL_DEDUCTION"),
            sa.Column("ref_no", sa.String(128), nullable=True),
            _user_fk("recorded_by_id"),
            _ts("created_at", nullable=False),
        )
        op.create_index("ix_cashier_charge_payments_charge_id", "cashier_charge_payments", ["charge_id"])

    # ---- Delivery runs ----
    if "delivery_runs" not in existing:
        op.create_table(
            "delivery_runs",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("run_code", sa.String(32), nullable=False, unique=True),
            sa.Column("status", sa.String(16), nullable=False, server_default="PLANNED"),
            sa.Column("rider_id", sa.Integer(), sa.ForeignKey("employees.id", ondelete="SET NULL"), nullable=True),
            sa.Column("vehicle_id", sa.Integer(), sa.ForeignKey("vehicles.id", ondelete="SET NULL"), nullable=True),
            sa.Column("loadout_snapshot", sa.JSON(), nullable=True),
            sa.Column("dispatch_snapshot", sa.JSON(), nullable=True),
            sa.Column("checkin_snapshot", sa.JSON(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            _ts("created_at", nullable=False),
            _user_fk("created_by_user_id"),
            _ts("dispatched_at"),
            _ts("checked_in_at"),
            _ts("closed_at"),
        )
        op.create_index("idx_delivery_runs_status", "delivery_runs", ["status"])

    if "delivery_run_orders" not in existing:
        op.create_table(
            "delivery_run_orders",
            sa.Column(
                "run_id", sa.Integer(), sa.ForeignKey("delivery_runs.id", ondelete="CASCADE"), primary_key=True
            ),
            sa.Column(
                "order_id",
                sa.Integer(),
                sa.ForeignKey("orders.id", ondelete="CASCADE"),
                primary_key=True,
                unique=True,
            ),
            sa.Column("sequence", sa.Integer(), nullable=True),
        )

    if "run_receipts" not in existing:
        op.create_table(
            "run_receipts",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column(
                "run_id", sa.Integer(), sa.ForeignKey("delivery_runs.id", ondelete="CASCADE"), nullable=False
            ),
            sa.Column("kind", sa.String(8), nullable=False, server_default="ROAD"),
            sa.Column("receipt_key", sa.String(64), nullable=False),
            sa.Column(
                "parent_order_id", sa.Integer(), sa.ForeignKey("orders.id", ondelete="SET NULL"), nullable=True
            ),
            sa.Column("customer_id", sa.Integer(), sa.ForeignKey("customers.id", ondelete="SET NULL"), nullable=True),
            sa.Column("customer_name", sa.String(255), nullable=True),
            sa.Column("customer_phone", sa.String(20), nullable=True),
            _money("cash_collected", server_default="0"),
            sa.Column("is_on_credit", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("note", sa.Text(), nullable=True),
            _ts("voided_at"),
            _user_fk("voided_by_id"),
            sa.Column("void_reason", sa.String(200), nullable=True),
            _ts("created_at", nullable=False),
            _ts("updated_at", nullable=False),
            sa.UniqueConstraint("run_id", "receipt_key", name="uq_run_receipts_run_key"),
        )
        op.create_index("ix_run_receipts_run_id", "run_receipts", ["run_id"])
        op.create_index("idx_run_receipts_parent_order", "run_receipts", ["parent_order_id"])

    if "run_receipt_lines" not in existing:
        op.create_table(
            "run_receipt_lines",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column(
                "receipt_id", sa.Integer(), sa.ForeignKey("run_receipts.id", ondelete="CASCADE"), nullable=False
            ),
            sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("qty", sa.Numeric(12, 3), nullable=False),
            sa.Column("unit_kind", sa.String(16), nullable=True),
            _money("unit_price"),
            _money("line_total"),
            _ts("created_at", nullable=False),
        )
        op.create_index("ix_run_receipt_lines_receipt_id", "run_receipt_lines", ["receipt_id"])

    if "override_logs" not in existing:
        op.create_table(
            "override_logs",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("kind", sa.String(32), nullable=False),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id", ondelete="SET NULL"), nullable=True),
            sa.Column("run_id", sa.Integer(), sa.ForeignKey("delivery_runs.id", ondelete="SET NULL"), nullable=True),
            sa.Column("approved_by", sa.String(128), nullable=False),
            sa.Column("reason", sa.Text(), nullable=True),
            _ts("created_at", nullable=False),
        )
        op.create_index("idx_override_logs_kind_created", "override_logs", ["kind", "created_at"])
        op.create_index("ix_override_logs_order_id", "override_logs", ["order_id"])
        op.create_index("ix_override_logs_run_id", "override_logs", ["run_id"])

    # ---- Clearance & customer A/R ----
    if "clearance_cases" not in existing:
        op.create_table(
            "clearance_cases",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("receipt_key", sa.String(64), nullable=False, unique=True),
            sa.Column("status", sa.String(24), nullable=False, server_default="NEEDS_CLEARANCE"),
            sa.Column("origin", sa.String(16), nullable=False, server_default="RIDER"),
            sa.Column("customer_id", sa.Integer(), sa.ForeignKey("customers.id", ondelete="SET NULL"), nullable=True),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id", ondelete="SET NULL"), nullable=True),
            sa.Column("run_id", sa.Integer(), sa.ForeignKey("delivery_runs.id", ondelete="CASCADE"), nullable=True),
            sa.Column(
                "run_receipt_id", sa.Integer(), sa.ForeignKey("run_receipts.id", ondelete="SET NULL"), nullable=True
            ),
            _money("frozen_total"),
            _money("cash_collected"),
            _user_fk("flagged_by_id"),
            _ts("flagged_at", nullable=False),
            sa.Column("note", sa.Text(), nullable=True),
            _ts("created_at", nullable=False),
            _ts("updated_at", nullable=False),
        )
        op.create_index("idx_clearance_cases_status", "clearance_cases", ["status"])
        op.create_index("idx_clearance_cases_run", "clearance_cases", ["run_id"])

    if "clearance_claims" not in existing:
        op.create_table(
            "clearance_claims",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column(
                "case_id", sa.Integer(), sa.ForeignKey("clearance_cases.id", ondelete="CASCADE"), nullable=False
            ),
            sa.Column("type", sa.String(24), nullable=False),
            _money("requested_payable", nullable=True),
            _money("cash_available", nullable=True),
            sa.Column("detail", sa.Text(), nullable=True),
            _ts("created_at", nullable=False),
        )
        op.create_index("ix_clearance_claims_case_id", "clearance_claims", ["case_id"])

    if "clearance_decisions" not in existing:
        op.create_table(
            "clearance_decisions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column(
                "case_id", sa.Integer(), sa.ForeignKey("clearance_cases.id", ondelete="CASCADE"), nullable=False
            ),
            sa.Column("kind", sa.String(32), nullable=False),
            _money("override_discount_approved", nullable=True),
            _money("approved_payable", nullable=True),
            _money("ar_balance", nullable=True),
            _user_fk("decided_by_id"),
            _ts("decided_at", nullable=False),
            sa.Column("note", sa.Text(), nullable=True),
        )
        op.create_index("ix_clearance_decisions_case_id", "clearance_decisions", ["case_id"])

    if "customer_ars" not in existing:
        op.create_table(
            "customer_ars",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column(
                "customer_id", sa.Integer(), sa.ForeignKey("customers.id", ondelete="RESTRICT"), nullable=False
            ),
            sa.Column(
                "clearance_decision_id",
                sa.Integer(),
                sa.ForeignKey("clearance_decisions.id", ondelete="SET NULL"),
                nullable=True,
                unique=True,
            ),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id", ondelete="SET NULL"), nullable=True),
            sa.Column("run_id", sa.Integer(), sa.ForeignKey("delivery_runs.id", ondelete="SET NULL"), nullable=True),
            _money("principal"),
            _money("balance"),
            sa.Column("status", sa.String(24), nullable=False, server_default="OPEN"),
            _ts("due_date"),
            sa.Column("note", sa.Text(), nullable=True),
            _ts("created_at", nullable=False),
            _ts("updated_at", nullable=False),
            _ts("settled_at"),
        )
        op.create_index("idx_customer_ars_customer_status", "customer_ars", ["customer_id", "status"])

    if "customer_ar_payments" not in existing:
        op.create_table(
            "customer_ar_payments",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("ar_id", sa.Integer(), sa.ForeignKey("customer_ars.id", ondelete="CASCADE"), nullable=False),
            _money("amount"),
            sa.Column("note", sa.Text(), nullable=True),
            sa.Column("ref_no", sa.String(128), nullable=True),
            sa.Column(
                "shift_id", sa.Integer(), sa.ForeignKey("cashier_shifts.id", ondelete="SET NULL"), nullable=True
            ),
            _user_fk("cashier_id"),
            _ts("created_at", nullable=False),
        )
        op.create_index("ix_customer_ar_payments_ar_id", "customer_ar_payments", ["ar_id"])
        op.create_index("idx_customer_ar_payments_shift", "customer_ar_payments", ["shift_id"])

    # ---- Rider variances & charges ----
    if "rider_run_variances" not in existing:
        op.create_table(
            "rider_run_variances",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column(
                "receipt_id",
                sa.Integer(),
                sa.ForeignKey("run_receipts.id", ondelete="SET NULL"),
                nullable=True,
                unique=True,
            ),
            sa.Column(
                "run_id", sa.Integer(), sa.ForeignKey("delivery_runs.id", ondelete="CASCADE"), nullable=False
            ),
            sa.Column("rider_id", sa.Integer(), sa.ForeignKey("employees.id", ondelete="RESTRICT"), nullable=False),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id", ondelete="SET NULL"), nullable=True),
            sa.Column(
                "shift_id", sa.Integer(), sa.ForeignKey("cashier_shifts.id", ondelete="SET NULL"), nullable=True
            ),
            _money("expected"),
            _money("actual"),
            _money("variance"),
            sa.Column("status", sa.String(24), nullable=False, server_default="OPEN"),
            sa.Column("resolution", sa.String(24), nullable=True),
            sa.Column("note", sa.Text(), nullable=True),
            _ts("manager_approved_at"),
            _user_fk("manager_approved_by_id"),
            _ts("rider_accepted_at"),
            _user_fk("rider_accepted_by_id"),
            _ts("resolved_at"),
            _ts("created_at", nullable=False),
        )
        op.create_index("ix_rider_run_variances_run_id", "rider_run_variances", ["run_id"])
        op.create_index("idx_rider_run_variances_rider_status", "rider_run_variances", ["rider_id", "status"])

    if "rider_charges" not in existing:
        op.create_table(
            "rider_charges",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column(
                "variance_id",
                sa.Integer(),
                sa.ForeignKey("rider_run_variances.id", ondelete="CASCADE"),
                nullable=False,
                unique=True,
            ),
            sa.Column("run_id", sa.Integer(), sa.ForeignKey("delivery_runs.id", ondelete="SET NULL"), nullable=True),
            sa.Column("rider_id", sa.Integer(), sa.ForeignKey("employees.id", ondelete="RESTRICT"), nullable=False),
            _money("amount"),
            sa.Column("status", sa.String(24), nullable=False, server_default="OPEN"),
            sa.Column("note", sa.Text(), nullable=True),
            _user_fk("created_by_id"),
            _ts("created_at", nullable=False),
            _ts("settled_at"),
        )

    if "rider_charge_payments" not in existing:
        op.create_table(
            "rider_charge_payments",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column(
                "charge_id", sa.Integer(), sa.ForeignKey("rider_charges.id", ondelete="CASCADE"), nullable=False
            ),
            _money("amount"),
            sa.Column("method", sa.String(32), nullable=False, server_default="PAYROLL_DEDUCTION"),
            sa.Column("ref_no", sa.String(128), nullable=True),
            _user_fk("recorded_by_id"),
            _ts("created_at", nullable=False),
        )
        op.create_index("ix_rider_charge_payments_charge_id", "rider_charge_payments", ["charge_id"])


def downgrade() -> None:
    """Drop every table created above, children first."""
    for table in (
        "rider_charge_payments",
        "rider_charges",
        "rider_run_variances",
        "customer_ar_payments",
        "customer_ars",
        "clearance_decisions",
        "clearance_claims",
        "clearance_cases",
        "override_logs",
        "run_receipt_lines",
        "run_receipts",
        "delivery_run_orders",
        "delivery_runs",
        "cashier_charge_payments",
        "cashier_charges",
        "cashier_shift_variances",
        "cash_drawer_txns",
        "receipt_counters",
        "payments",
        "cashier_shifts",
        "order_items",
        "orders",
        "customer_item_prices",
        "customer_addresses",
        "customers",
        "stock_movements",
        "products",
        "audit_events",
        "user_branches",
        "branches",
        "user_roles",
        "users",
        "employees",
        "vehicles",
        "roles",
    ):
        op.drop_table(table)
