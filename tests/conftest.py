# tests/conftest.py
# ---------------------------------------------------------------------
# - every test gets its own SQLite file DB under tmp_path (create_all)
# - services are called directly with a Session; API tests go through
#   TestClient with get_db / current_actor overridden
# - a fixed clock (NOW) keeps invoice numbers and due dates predictable
# ---------------------------------------------------------------------
from __future__ import annotations

import itertools
import os

# must be set before medledger.db.session builds its module-level engine
os.environ["DATABASE_URL"] = "sqlite://"

from datetime import date, datetime
from decimal import Decimal
from typing import Callable

import pytest
from fastapi.testclient import TestClient

from medledger.api.deps import current_actor, get_db
from medledger.db.base import Base
from medledger.db.session import make_engine, make_session_factory
from medledger.main import app
from medledger.models.clinical import (
    Department,
    Patient,
    Practitioner,
    PractitionerPaymentType,
    Prescription,
    PrescriptionItem,
    PurchaseOrder,
    Sale,
)
from medledger.models.pharmacy_inventory import Medicine, MedicineBatch, Supplier
from medledger.services import invoice_builder, stock_ledger

NOW = datetime(2024, 1, 15, 10, 0, 0)
TODAY = NOW.date()
FAR_EXPIRY = date(2030, 12, 31)
ACTOR_ID = 7

_rx_seq = itertools.count(1)


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'medledger_test.db'}")
    # WAL: an idle reader session must not block the API / second session writers
    raw = eng.raw_connection()
    try:
        raw.cursor().execute("PRAGMA journal_mode=WAL")
    finally:
        raw.close()
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def db(session_factory):
    s = session_factory()
    try:
        yield s
    finally:
        s.rollback()
        s.close()


# ---------- seed helpers ----------
@pytest.fixture
def make_medicine(db) -> Callable[..., Medicine]:

    def _make(name: str = "Paracetamol 500mg", *, reorder_level: int = 5, prescription_required: bool = False,
              default_price=Decimal("50.00")) -> Medicine:
        med = Medicine(
            name=name,
            reorder_level=reorder_level,
            prescription_required=prescription_required,
            default_price=default_price,
            stock_quantity=0,
        )
        db.add(med)
        db.commit()
        return med

    return _make


@pytest.fixture
def receive(db) -> Callable[..., MedicineBatch]:
    """Book stock through the ledger so the journal is complete."""

    def _receive(medicine: Medicine, qty: int, *, batch_number: str = "B-001", expiry_date: date = FAR_EXPIRY,
                 selling_price=Decimal("50.00"), purchase_date: date | None = None) -> MedicineBatch:
        snap = stock_ledger.receive(
            db,
            medicine.id,
            {
                "batch_number": batch_number,
                "expiry_date": expiry_date,
                "purchase_price": Decimal("30.00"),
                "selling_price": selling_price,
                "purchase_date": purchase_date,
            },
            qty,
            actor_id=ACTOR_ID,
        )
        db.commit()
        return db.get(MedicineBatch, snap.batch_id)

    return _receive


@pytest.fixture
def medicine(make_medicine):
    return make_medicine()


@pytest.fixture
def batch(medicine, receive):
    """Paracetamol batch B-001: 10 units @ 50.00."""
    return receive(medicine, 10)


@pytest.fixture
def department(db):
    d = Department(name="Orthopaedics")
    db.add(d)
    db.commit()
    return d


@pytest.fixture
def part_time(db, department):
    p = Practitioner(
        first_name="Asha",
        last_name="Menon",
        department_id=department.id,
        is_full_time=False,
        payment_type=PractitionerPaymentType.FEE_PER_VISIT.value,
        revenue_percentage=Decimal("40.00"),
    )
    db.add(p)
    db.commit()
    return p


@pytest.fixture
def full_time(db, department):
    p = Practitioner(
        first_name="Ravi",
        last_name="Kumar",
        department_id=department.id,
        is_full_time=True,
        payment_type=PractitionerPaymentType.SALARY.value,
    )
    db.add(p)
    db.commit()
    return p


@pytest.fixture
def patient(db):
    p = Patient(first_name="Meera", last_name="Iyer", phone="9876500000", address="12 Lake Road")
    db.add(p)
    db.commit()
    return p


@pytest.fixture
def supplier(db):
    s = Supplier(name="Sunrise Pharma Distributors", phone="0422-555000")
    db.add(s)
    db.commit()
    return s


@pytest.fixture
def purchase_order(db, supplier):
    po = PurchaseOrder(order_number="PO-0001", supplier_id=supplier.id)
    db.add(po)
    db.commit()
    return po


@pytest.fixture
def make_prescription(db):

    def _make(patient: Patient, items, *, practitioner_id=None, issue_date: date = TODAY,
              validity_days: int = 30) -> Prescription:
        rx = Prescription(
            prescription_number=f"RX-{issue_date:%Y%m%d}-{next(_rx_seq)}",
            patient_id=patient.id,
            practitioner_id=practitioner_id,
            issue_date=issue_date,
            validity_days=validity_days,
        )
        for med, qty in items:
            rx.items.append(PrescriptionItem(medicine_id=med.id, medicine_name=med.name, quantity=qty))
        db.add(rx)
        db.commit()
        return rx

    return _make


@pytest.fixture
def pharmacy_invoice(db, medicine, batch):
    """4 x 50.00 from batch B-001, issued."""

    def _create(qty: int = 4, **kw):
        return invoice_builder.create_invoice(
            db,
            invoice_type="Pharmacy",
            customer={"name": "Walk-in customer"},
            line_items=[{
                "item_kind": "Medicine",
                "medicine_id": medicine.id,
                "batch_id": batch.id,
                "quantity": qty,
                "unit_price": Decimal("50.00"),
            }],
            actor_id=ACTOR_ID,
            now=kw.pop("now", NOW),
            **kw,
        )

    return _create


@pytest.fixture
def service_invoice(db):
    """Single Service / Procedure style invoice builder."""

    def _create(amount="1000.00", *, invoice_type="Procedure", kind="Procedure", practitioner=None, now=NOW, **kw):
        return invoice_builder.create_invoice(
            db,
            invoice_type=invoice_type,
            customer={"name": "Out-patient"},
            line_items=[{
                "item_kind": kind,
                "description": f"{invoice_type} charge",
                "quantity": 1,
                "unit_price": Decimal(amount),
                "procedure_code": "PRC-01" if kind == "Procedure" else None,
            }],
            links={"practitioner_id": practitioner.id if practitioner else None},
            actor_id=ACTOR_ID,
            now=now,
            **kw,
        )

    return _create


# ---------- API ----------
@pytest.fixture
def client(session_factory):

    def _get_db():
        s = session_factory()
        try:
            yield s
        finally:
            s.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[current_actor] = lambda: ACTOR_ID
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def sale_for(db, invoice) -> Sale:
    db.expire_all()
    return db.get(Sale, invoice.sale_id)
