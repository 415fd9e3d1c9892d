from decimal import Decimal

import pytest
from werkzeug.security import generate_password_hash

from app.pos import create_app
from app.pos.db import session_scope
from app.pos.models import Base, Branch, Role, User
from app.pos.modules.catalog.models import Product
from app.pos.modules.customers.models import Customer
from app.pos.modules.fleet.models import EMPLOYEE_RIDER, Employee, Vehicle
from app.pos.rbac import ADMIN, CASHIER, EMPLOYEE, ROLE_NAMES, STORE_MANAGER

PASSWORD = "pw-123456"

USERS = (
    ("admin@example.com", ADMIN),
    ("manager@example.com", STORE_MANAGER),
    ("cashier@example.com", CASHIER),
    ("rider@example.com", EMPLOYEE),
)


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        roles = {key: Role(key=key, name=name) for key, name in ROLE_NAMES.items()}
        s.add_all(roles.values())
        s.add(Branch(name="Main Store"))

        trike = Vehicle(name="Trike 1", type="TRICYCLE", capacity_units=Decimal("500"), active=True)
        rider = Employee(first_name="Rey", last_name="Santos", role=EMPLOYEE_RIDER, active=True, default_vehicle=trike)
        s.add_all([trike, rider])

        for email, role_key in USERS:
            u = User(email=email, full_name=email.split("@")[0].title(), password_hash=generate_password_hash(PASSWORD), is_active=True)
            u.roles.append(roles[role_key])
            if role_key == EMPLOYEE:
                u.employee = rider
            s.add(u)

        s.add_all(
            [
                Product(
                    name="Rice 25kg",
                    sku="RICE-25",
                    price=Decimal("52"),
                    srp=Decimal("1250"),
                    stock=Decimal("20"),
                    packing_stock=Decimal("50"),
                    packing_size=Decimal("25"),
                    packing_unit="kg",
                    allow_pack_sale=True,
                    is_active=True,
                ),
                Product(
                    name="Hog Feeds 50kg",
                    sku="FEED-50",
                    price=Decimal("0"),
                    srp=Decimal("1500"),
                    stock=Decimal("10"),
                    packing_stock=Decimal("0"),
                    packing_size=Decimal("50"),
                    packing_unit="kg",
                    allow_pack_sale=False,
                    is_active=True,
                ),
                Customer(first_name="Maria", last_name="Cruz", phone="+639171234567", is_active=True),
            ]
        )

    return app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def db(app):
    s = app.extensions["sqlalchemy_sessionmaker"]()
    yield s
    s.close()


@pytest.fixture()
def users(db):
    return {u.email.split("@")[0]: u for u in db.query(User).all()}


@pytest.fixture()
def rice(db):
    return db.query(Product).filter(Product.sku == "RICE-25").one()


@pytest.fixture()
def feeds(db):
    return db.query(Product).filter(Product.sku == "FEED-50").one()


@pytest.fixture()
def customer(db):
    return db.query(Customer).filter(Customer.last_name == "Cruz").one()


@pytest.fixture()
def rider(db):
    return db.query(Employee).filter(Employee.role == EMPLOYEE_RIDER).one()


@pytest.fixture()
def open_shift(db, users):
    """The cashier's shift, opened by the manager with a 1,000 float and accepted."""
    from app.pos.modules.cashier_shifts.service import manager_open_shift, respond_to_opening

    shift, _ = manager_open_shift(db, users["manager"], cashier_id=users["cashier"].id, opening_float="1000")
    respond_to_opening(db, users["cashier"], shift, accept=True, counted="1000")
    db.commit()
    return shift


@pytest.fixture()
def login(client):
    """Log in as one of the seeded users; returns the session's CSRF token."""

    def _login(email: str) -> str:
        client.post("/auth/login", data={"email": email, "password": PASSWORD}, follow_redirects=False)
        with client.session_transaction() as sess:
            return sess["csrf_token"]

    return _login


@pytest.fixture()
def planned(db, users, rice, customer, rider):
    """A planned run carrying one 2-sack delivery order for Maria Cruz."""
    from app.pos.modules.dispatch.service import attach_order, create_run
    from app.pos.modules.orders.service import create_order

    order = create_order(
        db,
        {
            "channel": "DELIVERY",
            "deliver_to": "Purok 3, Brgy. San Isidro",
            "customer_id": customer.id,
            "items": [{"product_id": rice.id, "qty": "2", "unit_price": "1250", "mode": "pack"}],
        },
        users["cashier"],
    )
    db.commit()
    run = create_run(db, users["manager"], rider_id=rider.id)
    attach_order(db, users["manager"], run, order)
    db.commit()
    return run, order
