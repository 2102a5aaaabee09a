# tests/test_invoice_builder.py
from datetime import date, timedelta
from decimal import Decimal

import pytest

from medledger.core.config import settings
from medledger.core.errors import (
    BatchNotFound,
    InsufficientStock,
    InvoiceNotFound,
    MedicineNotFound,
    NotFound,
    OverpaymentRejected,
    ValidationError,
)
from medledger.models.billing import (
    Invoice,
    InvoiceLineItem,
    InvoiceNumberSeries,
    InvoicePayment,
    InvoiceType,
    LineItemKind,
)
from medledger.models.clinical import Prescription, PrescriptionItem, PurchaseOrder, Sale
from medledger.models.pharmacy_inventory import Medicine, MedicineBatch, StockTransaction
from medledger.services import invoice_builder
from medledger.services.invoice_builder import create_invoice, infer_invoice_type

from .conftest import ACTOR_ID, NOW, TODAY, sale_for


def _med_line(med, batch=None, qty=1, **kw):
    line = {"item_kind": "Medicine", "medicine_id": med.id, "quantity": qty}
    if batch is not None:
        line["batch_id"] = batch.id
    line.update(kw)
    return line


def _service_line(price, qty=1, **kw):
    line = {
        "item_kind": "Service",
        "service_type": "Consultation",
        "description": "OP consultation",
        "quantity": qty,
        "unit_price": Decimal(price),
    }
    line.update(kw)
    return line


# ---------- pharmacy checkout ----------
def test_pharmacy_checkout(db, medicine, batch, pharmacy_invoice):
    inv = pharmacy_invoice(4)

    assert inv.invoice_number == "PHM-202401-00001"
    assert inv.invoice_type == "Pharmacy"
    assert inv.subtotal == Decimal("200.00")
    assert inv.total == Decimal("200.00")
    assert inv.balance_due == Decimal("200.00")
    assert inv.amount_paid == Decimal("0")
    assert inv.status == "Issued"
    assert inv.issued_at == NOW
    assert inv.due_date == TODAY + timedelta(days=settings.DEFAULT_DUE_DAYS)
    assert inv.is_pharmacy_sale is True
    assert inv.dispensing_date == NOW
    assert inv.dispensed_by == ACTOR_ID

    line = inv.items[0]
    assert line.batch_number == "B-001"
    assert line.expiry_date == batch.expiry_date
    assert line.total_price == Decimal("200.00")

    db.expire_all()
    assert db.get(MedicineBatch, batch.id).quantity == 6
    assert db.get(Medicine, medicine.id).stock_quantity == 6

    dispense = (db.query(StockTransaction).filter_by(batch_id=batch.id, txn_type="DISPENSE").one())
    assert dispense.quantity_change == -4
    assert (dispense.ref_type, dispense.ref_id) == ("INVOICE", inv.id)


def test_pharmacy_checkout_creates_pending_sale(db, pharmacy_invoice):
    inv = pharmacy_invoice(2)
    sale = sale_for(db, inv)

    assert sale.sale_number == f"SALE-{inv.invoice_number}"
    assert sale.status == "Pending"
    assert sale.total_amount == Decimal("100.00")


def test_existing_sale_is_linked_not_duplicated(db, medicine, batch):
    sale = Sale(sale_number="S-100", customer_name="Counter")
    db.add(sale)
    db.commit()

    inv = create_invoice(
        db,
        invoice_type="Pharmacy",
        line_items=[_med_line(medicine, batch, 1)],
        links={"sale_id": sale.id},
        now=NOW,
    )
    assert inv.sale_id == sale.id
    assert db.query(Sale).count() == 1
    assert sale_for(db, inv).total_amount == Decimal("50.00")


def test_medicine_price_defaults_to_batch_selling_price(db, medicine, receive):
    b = receive(medicine, 10, batch_number="PRICED", selling_price=Decimal("42.50"))
    inv = create_invoice(db, line_items=[_med_line(medicine, b, 2)], now=NOW)

    assert inv.items[0].unit_price == Decimal("42.50")
    assert inv.total == Decimal("85.00")
    assert inv.items[0].description == medicine.name


def test_medicine_line_without_batch_does_not_touch_stock(db, medicine, batch):
    inv = create_invoice(db, line_items=[_med_line(medicine, qty=3)], now=NOW)

    assert inv.total == Decimal("150.00")
    assert inv.items[0].batch_id is None
    db.expire_all()
    assert db.get(MedicineBatch, batch.id).quantity == 10
    assert inv.dispensing_date is None


# ---------- all-or-nothing ----------
def test_insufficient_stock_creates_nothing(db, medicine, receive):
    small = receive(medicine, 3, batch_number="SMALL")

    with pytest.raises(InsufficientStock) as exc:
        create_invoice(db, invoice_type="Pharmacy", line_items=[_med_line(medicine, small, 5)], now=NOW)
    assert exc.value.available == 3

    assert db.get(MedicineBatch, small.id).quantity == 3
    assert db.query(Invoice).count() == 0
    assert db.query(InvoiceLineItem).count() == 0
    assert db.query(Sale).count() == 0
    assert db.query(InvoiceNumberSeries).count() == 0
    assert db.query(StockTransaction).filter_by(txn_type="DISPENSE").count() == 0


def test_failure_on_later_line_undoes_earlier_deductions(db, medicine, batch, receive):
    small = receive(medicine, 3, batch_number="SMALL")

    with pytest.raises(InsufficientStock):
        create_invoice(
            db,
            line_items=[_med_line(medicine, batch, 4), _med_line(medicine, small, 5)],
            now=NOW,
        )

    assert db.get(MedicineBatch, batch.id).quantity == 10
    assert db.get(MedicineBatch, small.id).quantity == 3
    assert db.get(Medicine, medicine.id).stock_quantity == 13
    assert db.query(StockTransaction).filter_by(txn_type="DISPENSE").count() == 0


def test_failed_checkout_does_not_burn_a_number(db, medicine, batch, pharmacy_invoice):
    with pytest.raises(InsufficientStock):
        pharmacy_invoice(11)
    inv = pharmacy_invoice(1)
    assert inv.invoice_number == "PHM-202401-00001"


def test_overpaying_immediate_payment_aborts_checkout(db, medicine, batch, pharmacy_invoice):
    with pytest.raises(OverpaymentRejected):
        pharmacy_invoice(4, immediate_payment={"amount": Decimal("250.00"), "method": "Cash"})

    assert db.query(Invoice).count() == 0
    assert db.get(MedicineBatch, batch.id).quantity == 10


# ---------- totals ----------
def test_item_mode_totals(db):
    inv = create_invoice(
        db,
        line_items=[
            _service_line("100.00", qty=2, tax_rate=Decimal("5")),
            {"item_kind": "Procedure", "description": "Dressing", "unit_price": Decimal("300.00")},
        ],
        discount=Decimal("50.00"),
        now=NOW,
    )

    assert inv.subtotal == Decimal("500.00")
    assert inv.tax == Decimal("10.00")
    assert inv.total == Decimal("460.00")
    assert inv.total == inv.subtotal - inv.discount + inv.tax
    assert inv.balance_due == inv.total - inv.amount_paid


def test_invoice_mode_tax_on_discounted_subtotal(db):
    inv = create_invoice(
        db,
        line_items=[_service_line("250.00", qty=2, tax_rate=Decimal("5"))],
        discount=Decimal("50.00"),
        tax_policy={"mode": "INVOICE", "rate": Decimal("18")},
        now=NOW,
    )

    assert inv.subtotal == Decimal("500.00")
    assert inv.tax == Decimal("81.00")
    assert inv.total == Decimal("531.00")
    assert inv.items[0].tax_amount == Decimal("0")


def test_no_tax_mode_ignores_line_rates(db):
    inv = create_invoice(
        db,
        line_items=[_service_line("99.99", tax_rate=Decimal("12"))],
        tax_policy="NONE",
        now=NOW,
    )
    assert inv.tax == Decimal("0")
    assert inv.total == Decimal("99.99")


def test_half_up_rounding_per_line(db):
    inv = create_invoice(
        db,
        line_items=[_service_line("10.05", qty=1, tax_rate=Decimal("5"))],
        now=NOW,
    )
    # 10.05 * 5% = 0.5025 -> 0.50
    assert inv.tax == Decimal("0.50")
    assert inv.total == Decimal("10.55")


@pytest.mark.parametrize("kwargs", [
    {"line_items": []},
    {"line_items": [_service_line("100.00")], "discount": Decimal("-1")},
    {"line_items": [_service_line("100.00")], "discount": Decimal("100.01")},
    {"line_items": [_service_line("-5.00")]},
    {"line_items": [_service_line("100.00", qty=0)]},
    {"line_items": [_service_line("100.00", tax_rate=Decimal("101"))]},
    {"line_items": [_service_line("100.00", service_type="Massage")]},
    {"line_items": [{"item_kind": "Gift", "description": "x", "unit_price": 1}]},
    {"line_items": [{"item_kind": "Procedure", "unit_price": 1}]},
    {"line_items": [_service_line("100.00")], "invoice_type": "Veterinary"},
    {"line_items": [_service_line("100.00")], "tax_policy": {"mode": "VAT"}},
])
def test_invalid_checkout_input(db, kwargs):
    with pytest.raises(ValidationError):
        create_invoice(db, now=NOW, **kwargs)
    assert db.query(Invoice).count() == 0


def test_discount_equal_to_subtotal_is_allowed(db):
    inv = create_invoice(db, line_items=[_service_line("100.00")], discount=Decimal("100.00"), now=NOW)
    assert inv.total == Decimal("0.00")
    assert inv.status == "Paid"


def test_free_pharmacy_sale_completes_its_sale(db, medicine, batch):
    inv = create_invoice(db, line_items=[_med_line(medicine, batch, 2)], discount=Decimal("100.00"), now=NOW)

    assert inv.total == Decimal("0.00")
    assert inv.status == "Paid"
    assert inv.payments == []
    assert sale_for(db, inv).status == "Completed"


def test_free_draft_keeps_sale_pending(db, medicine, batch):
    inv = create_invoice(db, line_items=[_med_line(medicine, batch, 2)], discount=Decimal("100.00"),
                         issue=False, now=NOW)
    assert inv.status == "Draft"
    assert sale_for(db, inv).status == "Pending"


def test_unknown_medicine_or_batch(db, medicine, batch, make_medicine):
    with pytest.raises(MedicineNotFound):
        create_invoice(db, line_items=[{"item_kind": "Medicine", "medicine_id": 999, "quantity": 1}], now=NOW)

    other = make_medicine("Azithromycin 500mg")
    with pytest.raises(BatchNotFound):
        create_invoice(db, line_items=[_med_line(other, batch, 1)], now=NOW)


def test_expired_batch_cannot_be_dispensed(db, medicine, receive):
    old = receive(medicine, 5, batch_number="OLD-1", expiry_date=TODAY - timedelta(days=1))
    last_day = receive(medicine, 5, batch_number="LAST-1", expiry_date=TODAY)

    with pytest.raises(ValidationError) as exc:
        create_invoice(db, line_items=[_med_line(medicine, old, 1)], now=NOW)
    assert exc.value.context["batch_id"] == old.id
    db.expire_all()
    assert db.get(MedicineBatch, old.id).quantity == 5
    assert db.query(Invoice).count() == 0

    inv = create_invoice(db, line_items=[_med_line(medicine, last_day, 1)], now=NOW)
    assert inv.items[0].batch_number == "LAST-1"


# ---------- type inference ----------
@pytest.mark.parametrize("kinds,expected", [
    ({LineItemKind.MEDICINE}, InvoiceType.PHARMACY),
    ({LineItemKind.MEDICINE, LineItemKind.SERVICE}, InvoiceType.MIXED),
    ({LineItemKind.MEDICINE, LineItemKind.LAB_TEST}, InvoiceType.MIXED),
    ({LineItemKind.PROCEDURE}, InvoiceType.PROCEDURE),
    ({LineItemKind.LAB_TEST}, InvoiceType.LAB_TEST),
    ({LineItemKind.SERVICE}, InvoiceType.APPOINTMENT),
    ({LineItemKind.PROCEDURE, LineItemKind.LAB_TEST}, InvoiceType.APPOINTMENT),
])
def test_infer_invoice_type(kinds, expected):
    assert infer_invoice_type(kinds) == expected


def test_mixed_invoice_numbering_and_sale(db, medicine, batch):
    inv = create_invoice(
        db,
        invoice_type="auto",
        line_items=[_service_line("500.00"), _med_line(medicine, batch, 2)],
        now=NOW,
    )
    assert inv.invoice_type == "Mixed"
    assert inv.invoice_number.startswith("MIX-202401-")
    assert inv.is_pharmacy_sale is True
    assert inv.sale_id is not None


def test_lab_test_invoice(db):
    inv = create_invoice(
        db,
        line_items=[{"item_kind": "LabTest", "description": "CBC", "test_code": "CBC-01", "unit_price": 350}],
        now=NOW,
    )
    assert inv.invoice_type == "LabTest"
    assert inv.items[0].test_code == "CBC-01"
    assert inv.sale_id is None


# ---------- customer / links ----------
def test_patient_details_fill_customer(db, patient, part_time):
    inv = create_invoice(
        db,
        invoice_type="Appointment",
        customer={"patient_id": patient.id},
        line_items=[_service_line("600.00")],
        links={"practitioner_id": part_time.id},
        now=NOW,
    )
    assert inv.customer_type == "Patient"
    assert inv.customer_name == "Meera Iyer"
    assert inv.customer_phone == "9876500000"
    assert inv.practitioner_id == part_time.id


def test_unknown_patient_or_practitioner(db):
    with pytest.raises(NotFound):
        create_invoice(db, customer={"patient_id": 404}, line_items=[_service_line("1")], now=NOW)
    with pytest.raises(NotFound):
        create_invoice(db, line_items=[_service_line("1")], links={"practitioner_id": 404}, now=NOW)


def test_purchase_invoice_moves_order_and_uses_purchase_terms(db, purchase_order):
    inv = create_invoice(
        db,
        invoice_type="Purchase",
        customer={"name": "Sunrise Pharma Distributors"},
        line_items=[_service_line("12000.00", service_type="Purchase", description="Stock replenishment")],
        links={"purchase_order_id": purchase_order.id},
        now=NOW,
    )

    assert inv.invoice_number == "PUR-202401-00001"
    assert inv.customer_type == "Supplier"
    assert inv.due_date == TODAY + timedelta(days=settings.PURCHASE_DUE_DAYS)
    assert inv.is_pharmacy_sale is False
    db.expire_all()
    assert db.get(PurchaseOrder, purchase_order.id).status == "Ordered"


def test_purchase_order_only_on_purchase_invoices(db, purchase_order):
    with pytest.raises(ValidationError):
        create_invoice(
            db,
            invoice_type="Procedure",
            line_items=[_service_line("10.00")],
            links={"purchase_order_id": purchase_order.id},
            now=NOW,
        )


def test_explicit_due_date_and_notes(db):
    due = date(2024, 3, 1)
    inv = create_invoice(db, line_items=[_service_line("10.00")], due_date=due, notes="corporate tie-up", now=NOW)
    assert inv.due_date == due
    assert inv.notes == "corporate tie-up"


def test_draft_invoice(db):
    inv = create_invoice(db, line_items=[_service_line("10.00")], issue=False, now=NOW)
    assert inv.status == "Draft"
    assert inv.issued_at is None


def test_immediate_full_payment(db, medicine, batch, pharmacy_invoice):
    inv = pharmacy_invoice(4, immediate_payment={"amount": Decimal("200.00"), "method": "UPI", "reference": "UPI-77"})

    assert inv.status == "Paid"
    assert inv.amount_paid == Decimal("200.00")
    assert inv.balance_due == Decimal("0.00")
    assert [(p.method, p.amount, p.reference) for p in inv.payments] == [("UPI", Decimal("200.00"), "UPI-77")]

    sale = sale_for(db, inv)
    assert sale.status == "Completed"
    assert sale.payment_method == "UPI"


# ---------- prescriptions ----------
def test_prescription_required_medicine_needs_prescription(db, make_medicine, receive):
    med = make_medicine("Alprazolam 0.5mg", prescription_required=True)
    b = receive(med, 20, batch_number="ALP-1")

    with pytest.raises(ValidationError):
        create_invoice(db, line_items=[_med_line(med, b, 2)], now=NOW)
    assert db.get(MedicineBatch, b.id).quantity == 20


def test_prescription_is_removed_once_fully_billed(db, patient, part_time, make_medicine, receive, make_prescription):
    med = make_medicine("Alprazolam 0.5mg", prescription_required=True)
    b = receive(med, 20, batch_number="ALP-1")
    rx = make_prescription(patient, [(med, 2)], practitioner_id=part_time.id)
    rx_id = rx.id

    inv = create_invoice(
        db,
        customer={"patient_id": patient.id},
        line_items=[_med_line(med, b, 2)],
        links={"prescription_id": rx_id},
        now=NOW,
    )

    assert inv.prescription_id == rx_id
    assert inv.practitioner_id == part_time.id
    db.expire_all()
    assert db.get(Prescription, rx_id) is None
    assert db.query(PrescriptionItem).filter_by(prescription_id=rx_id).count() == 0


def test_prescription_kept_as_completed_when_configured(db, monkeypatch, patient, medicine, batch, make_prescription):
    monkeypatch.setattr(settings, "PRESCRIPTION_DELETE_ON_CONVERT", False)
    rx = make_prescription(patient, [(medicine, 4)])

    inv = create_invoice(db, line_items=[_med_line(medicine, batch, 4)], links={"prescription_id": rx.id}, now=NOW)

    db.expire_all()
    rx = db.get(Prescription, rx.id)
    assert rx.status == "Completed"
    item = rx.items[0]
    assert item.is_billed is True
    assert item.is_dispensed is True
    assert item.dispensed_quantity == 4
    assert item.invoice_id == inv.id
    assert inv.items[0].prescription_item_id == item.id


def test_partially_dispensed_prescription_stays_active(db, monkeypatch, patient, medicine, batch, make_prescription):
    monkeypatch.setattr(settings, "PRESCRIPTION_DELETE_ON_CONVERT", True)
    rx = make_prescription(patient, [(medicine, 8)])

    create_invoice(db, line_items=[_med_line(medicine, batch, 3)], links={"prescription_id": rx.id}, now=NOW)

    db.expire_all()
    rx = db.get(Prescription, rx.id)
    assert rx is not None
    assert rx.status == "Active"
    assert rx.items[0].dispensed_quantity == 3
    assert rx.items[0].is_dispensed is False


def test_prescription_item_filled_over_two_invoices(db, monkeypatch, patient, medicine, batch, make_prescription):
    monkeypatch.setattr(settings, "PRESCRIPTION_DELETE_ON_CONVERT", False)
    rx = make_prescription(patient, [(medicine, 8)])
    item_id = rx.items[0].id
    start_qty = batch.quantity

    first = create_invoice(db, line_items=[_med_line(medicine, batch, 3)], links={"prescription_id": rx.id}, now=NOW)
    second = create_invoice(
        db,
        line_items=[_med_line(medicine, batch, 5, prescription_item_id=item_id)],
        links={"prescription_id": rx.id},
        now=NOW,
    )

    db.expire_all()
    rx = db.get(Prescription, rx.id)
    item = rx.items[0]
    assert rx.status == "Completed"
    assert item.dispensed_quantity == 8
    assert item.is_dispensed is True
    assert item.invoice_id == second.id
    assert first.items[0].prescription_item_id == item_id
    assert second.items[0].prescription_item_id == item_id
    assert db.get(MedicineBatch, batch.id).quantity == start_qty - 8


def test_fully_dispensed_item_cannot_be_billed_again(db, monkeypatch, patient, medicine, batch, make_prescription):
    monkeypatch.setattr(settings, "PRESCRIPTION_DELETE_ON_CONVERT", False)
    rx = make_prescription(patient, [(medicine, 2), (medicine, 2)])
    done, open_item = rx.items
    done.dispensed_quantity = 2
    done.is_dispensed = True
    db.commit()

    with pytest.raises(ValidationError):
        create_invoice(
            db,
            line_items=[_med_line(medicine, batch, 1, prescription_item_id=done.id)],
            links={"prescription_id": rx.id},
            now=NOW,
        )
    assert db.get(MedicineBatch, batch.id).quantity == 10

    inv = create_invoice(db, line_items=[_med_line(medicine, batch, 2)], links={"prescription_id": rx.id}, now=NOW)
    assert inv.items[0].prescription_item_id == open_item.id


def test_prescription_item_must_match_line_medicine(db, patient, medicine, batch, make_medicine, make_prescription):
    ibuprofen = make_medicine("Ibuprofen 400mg")
    rx = make_prescription(patient, [(ibuprofen, 1)])
    rx_id, item_id = rx.id, rx.items[0].id

    with pytest.raises(ValidationError) as exc:
        create_invoice(
            db,
            line_items=[_med_line(medicine, batch, 1, prescription_item_id=item_id)],
            links={"prescription_id": rx_id},
            now=NOW,
        )
    assert exc.value.context["prescribed_medicine_id"] == ibuprofen.id

    db.expire_all()
    rx = db.get(Prescription, rx_id)
    assert rx is not None
    assert rx.status == "Active"
    assert rx.items[0].is_billed is False
    assert db.get(MedicineBatch, batch.id).quantity == 10


def test_expired_prescription_rejected(db, patient, medicine, batch, make_prescription):
    rx = make_prescription(patient, [(medicine, 1)], issue_date=TODAY - timedelta(days=45), validity_days=30)

    with pytest.raises(ValidationError):
        create_invoice(db, line_items=[_med_line(medicine, batch, 1)], links={"prescription_id": rx.id}, now=NOW)
    assert db.get(MedicineBatch, batch.id).quantity == 10


def test_line_pointing_at_foreign_prescription_item(db, patient, medicine, batch, make_prescription):
    rx = make_prescription(patient, [(medicine, 1)])

    with pytest.raises(ValidationError):
        create_invoice(
            db,
            line_items=[_med_line(medicine, batch, 1, prescription_item_id=98765)],
            links={"prescription_id": rx.id},
            now=NOW,
        )


# ---------- queries ----------
def test_get_and_list_invoices(db, pharmacy_invoice, service_invoice):
    a = pharmacy_invoice(1)
    b = service_invoice("300.00")
    c = service_invoice("120.00", invoice_type="LabTest", kind="LabTest")

    assert invoice_builder.get_invoice(db, b.id).invoice_number == "PRC-202401-00001"
    with pytest.raises(InvoiceNotFound):
        invoice_builder.get_invoice(db, 123456)

    rows, total = invoice_builder.list_invoices(db)
    assert total == 3
    assert [r.id for r in rows] == [c.id, b.id, a.id]

    rows, total = invoice_builder.list_invoices(db, invoice_type="Pharmacy")
    assert (total, [r.id for r in rows]) == (1, [a.id])

    rows, total = invoice_builder.list_invoices(db, page=2, limit=2)
    assert total == 3
    assert [r.id for r in rows] == [a.id]

    rows, _ = invoice_builder.list_invoices(db, start=TODAY + timedelta(days=1))
    assert rows == []


def test_payments_table_empty_after_plain_checkout(db, pharmacy_invoice):
    pharmacy_invoice(1)
    assert db.query(InvoicePayment).count() == 0
