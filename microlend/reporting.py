"""
Reporting Engine Module

Read-side aggregations over customers, loans and repayments: dashboard,
monthly performance, product distribution, profit/loss, officer performance,
status breakdown, date-range and export summaries. Nothing here writes.
"""

from decimal import Decimal
from datetime import datetime, timezone, date, timedelta
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Union
from enum import Enum
import calendar
import csv
import io
import json

from .storage import StorageInterface, to_storable, parse_datetime
from .errors import ValidationError
from .identifiers import EntityType
from .interest import LoanProduct, round2
from .lifecycle import LoanStatus
from .loans import Loan
from .overdue import check_overdue, days_overdue
from .payments import Repayment, RepaymentStatus
from .rbac import StaffRole


ZERO = Decimal('0')
DISBURSED_STATUSES = (LoanStatus.ACTIVE, LoanStatus.COMPLETED, LoanStatus.OVERDUE)


class ReportFormat(Enum):
    """Output formats for reports"""
    DICT = "dict"
    CSV = "csv"
    JSON = "json"


@dataclass
class ReportResult:
    """Result of a report execution"""
    report_id: str
    generated_at: datetime
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    data: List[Dict[str, Any]] = field(default_factory=list)
    totals: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.metadata:
            self.metadata = {'row_count': len(self.data)}


def _percentage(part: Decimal, whole: Decimal) -> Decimal:
    if whole <= ZERO:
        return ZERO
    return round2(Decimal(part) / Decimal(whole) * Decimal('100'))


def _in_range(value: Optional[datetime], start: datetime, end: datetime) -> bool:
    return value is not None and start <= value <= end


class ReportingEngine:
    """
    Portfolio reporting over stored records
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    # Loaders

    def _loans(self) -> List[Loan]:
        return [Loan.from_dict(d) for d in self.storage.load_all(EntityType.LOAN.table)]

    def _repayments(self) -> List[Repayment]:
        return [Repayment.from_dict(d) for d in self.storage.load_all(EntityType.REPAYMENT.table)]

    def _customers(self) -> List[Dict[str, Any]]:
        return self.storage.load_all(EntityType.CUSTOMER.table)

    def _staff(self) -> List[Dict[str, Any]]:
        return self.storage.load_all(EntityType.STAFF.table)

    # Reports

    def dashboard(self, as_of: Optional[datetime] = None) -> ReportResult:
        """Headline counts and financial totals"""
        now = as_of or datetime.now(timezone.utc)
        customers = self._customers()
        loans = self._loans()
        repayments = self._repayments()
        staff = self._staff()

        def count_customers(status: str) -> int:
            return sum(1 for c in customers if c.get('status') == status)

        def count_loans(status: LoanStatus) -> int:
            return sum(1 for loan in loans if loan.status == status)

        disbursed = [loan for loan in loans if loan.status in DISBURSED_STATUSES]
        expected = sum((loan.total_payable for loan in disbursed), ZERO)
        repaid = sum((loan.total_paid for loan in disbursed), ZERO)

        totals = {
            'customers': {
                'total': len(customers),
                'pending': count_customers("Pending"),
                'approved': count_customers("Approved"),
                'active': count_customers("Active"),
            },
            'loans': {
                'total': len(loans),
                'pending': count_loans(LoanStatus.PENDING),
                'active': count_loans(LoanStatus.ACTIVE),
                'completed': count_loans(LoanStatus.COMPLETED),
                'overdue': count_loans(LoanStatus.OVERDUE),
                # Active loans the sweep has not reached yet
                'past_due_unswept': sum(1 for loan in loans if check_overdue(loan, now)),
            },
            'financial': {
                'total_disbursed': sum((loan.principal_amount for loan in disbursed), ZERO),
                'total_expected_repayment': expected,
                'total_repaid': repaid,
                'total_outstanding': sum((loan.remaining_balance for loan in disbursed), ZERO),
                'total_interest_earned': sum((loan.interest_paid for loan in disbursed), ZERO),
                'repayment_rate': _percentage(repaid, expected),
            },
            'repayments': {
                'total': sum(1 for r in repayments if r.status == RepaymentStatus.APPROVED),
                'pending': sum(1 for r in repayments if r.status == RepaymentStatus.PENDING),
            },
            'users': {
                'total': len(staff),
                'active': sum(1 for s in staff if s.get('is_active')),
                'loan_officers': sum(1 for s in staff if s.get('role') == StaffRole.LOAN_OFFICER.value),
            },
        }

        return ReportResult(
            report_id="dashboard",
            generated_at=datetime.now(timezone.utc),
            period_end=now,
            data=[totals],
            totals=totals
        )

    def monthly_performance(self, year: Optional[int] = None) -> ReportResult:
        """Disbursements, repayments and outstanding balances per calendar month"""
        year = year or datetime.now(timezone.utc).year
        loans = self._loans()
        repayments = [r for r in self._repayments() if r.status == RepaymentStatus.APPROVED]

        rows = []
        for month in range(1, 13):
            start = datetime(year, month, 1, tzinfo=timezone.utc)
            last_day = calendar.monthrange(year, month)[1]
            end = datetime(year, month, last_day, 23, 59, 59, tzinfo=timezone.utc)

            disbursed = [
                loan for loan in loans
                if loan.status in DISBURSED_STATUSES and _in_range(loan.disbursement_date, start, end)
            ]
            month_repayments = [r for r in repayments if _in_range(r.payment_date, start, end)]
            open_loans = [
                loan for loan in loans
                if loan.status in (LoanStatus.ACTIVE, LoanStatus.OVERDUE)
                and loan.start_date is not None and loan.start_date <= end
            ]
            interest_earned = sum((r.interest_paid for r in month_repayments), ZERO)

            rows.append({
                'month': month,
                'month_name': calendar.month_name[month],
                'year': year,
                'amount_disbursed': sum((loan.principal_amount for loan in disbursed), ZERO),
                'loans_count': len(disbursed),
                'amount_repaid': sum((r.payment_amount for r in month_repayments), ZERO),
                'interest_earned': interest_earned,
                'outstanding_amount': sum((loan.remaining_balance for loan in open_loans), ZERO),
                'overdue_count': sum(
                    1 for loan in loans
                    if loan.status == LoanStatus.OVERDUE and loan.end_date and loan.end_date <= end
                ),
                'profit': interest_earned,
            })

        return ReportResult(
            report_id="monthly_performance",
            generated_at=datetime.now(timezone.utc),
            period_start=datetime(year, 1, 1, tzinfo=timezone.utc),
            period_end=datetime(year, 12, 31, 23, 59, 59, tzinfo=timezone.utc),
            data=rows,
            totals={
                'amount_disbursed': sum((r['amount_disbursed'] for r in rows), ZERO),
                'amount_repaid': sum((r['amount_repaid'] for r in rows), ZERO),
                'interest_earned': sum((r['interest_earned'] for r in rows), ZERO),
            },
            metadata={'row_count': len(rows), 'year': year}
        )

    def product_distribution(self) -> ReportResult:
        """Loan count and principal per product"""
        loans = self._loans()
        total = len(loans)

        rows = []
        for product in LoanProduct:
            product_loans = [loan for loan in loans if loan.loan_product == product]
            rows.append({
                'loan_product': product.value,
                'count': len(product_loans),
                'percentage': _percentage(Decimal(len(product_loans)), Decimal(total)),
                'amount': sum((loan.principal_amount for loan in product_loans), ZERO),
            })

        return ReportResult(
            report_id="product_distribution",
            generated_at=datetime.now(timezone.utc),
            data=rows,
            totals={'count': total, 'amount': sum((r['amount'] for r in rows), ZERO)}
        )

    def profit_loss(self) -> ReportResult:
        """Interest earned against balances lost to default or at risk in overdue loans"""
        loans = self._loans()
        disbursed = [loan for loan in loans if loan.status in DISBURSED_STATUSES]
        defaulted = [loan for loan in loans if loan.status == LoanStatus.DEFAULTED]
        overdue = [loan for loan in loans if loan.status == LoanStatus.OVERDUE]

        profit = sum((loan.interest_paid for loan in disbursed), ZERO)
        expected = sum((loan.interest_amount for loan in disbursed), ZERO)
        loss = sum((loan.remaining_balance for loan in defaulted), ZERO)
        potential_loss = sum((loan.remaining_balance for loan in overdue), ZERO)

        totals = {
            'profit': {
                'total': profit,
                'expected': expected,
                'percentage': _percentage(profit, expected),
            },
            'loss': {
                'total': loss,
                'potential': potential_loss,
                'defaulted_loans': len(defaulted),
                'overdue_loans': len(overdue),
            },
            'net_profit': profit - loss,
            'profit_margin': _percentage(profit, profit + loss),
        }
        return ReportResult(
            report_id="profit_loss",
            generated_at=datetime.now(timezone.utc),
            data=[totals],
            totals=totals
        )

    def officer_performance(self) -> ReportResult:
        """Per active loan officer: customers, loans, disbursed and repaid amounts"""
        customers = self._customers()
        loans = self._loans()
        repayments = self._repayments()
        officers = [
            s for s in self._staff()
            if s.get('role') == StaffRole.LOAN_OFFICER.value and s.get('is_active')
        ]

        rows = []
        for officer in sorted(officers, key=lambda s: s['staff_id']):
            officer_loans = [loan for loan in loans if loan.created_by == officer['id']]
            paying = [
                loan for loan in officer_loans
                if loan.status in (LoanStatus.ACTIVE, LoanStatus.COMPLETED)
            ]
            disbursed = sum((loan.principal_amount for loan in paying), ZERO)
            repaid = sum((loan.total_paid for loan in paying), ZERO)

            rows.append({
                'staff_id': officer['staff_id'],
                'name': f"{officer['first_name']} {officer['last_name']}",
                'email': officer['email'],
                'customers_registered': sum(1 for c in customers if c.get('created_by') == officer['id']),
                'loans_created': len(officer_loans),
                'active_loans': sum(1 for loan in officer_loans if loan.status == LoanStatus.ACTIVE),
                'completed_loans': sum(1 for loan in officer_loans if loan.status == LoanStatus.COMPLETED),
                'total_disbursed': disbursed,
                'total_repaid': repaid,
                'repayments_recorded': sum(1 for r in repayments if r.recorded_by == officer['id']),
                'repayment_rate': _percentage(repaid, disbursed),
            })

        return ReportResult(
            report_id="officer_performance",
            generated_at=datetime.now(timezone.utc),
            data=rows
        )

    def loan_status_breakdown(self) -> ReportResult:
        """Count and principal per loan status, most common first"""
        loans = self._loans()
        total = len(loans)

        groups: Dict[LoanStatus, List[Loan]] = {}
        for loan in loans:
            groups.setdefault(loan.status, []).append(loan)

        rows = [
            {
                'status': status.value,
                'count': len(group),
                'total_amount': sum((loan.principal_amount for loan in group), ZERO),
                'percentage': _percentage(Decimal(len(group)), Decimal(total)),
            }
            for status, group in groups.items()
        ]
        rows.sort(key=lambda r: r['count'], reverse=True)

        return ReportResult(
            report_id="loan_status",
            generated_at=datetime.now(timezone.utc),
            data=rows,
            totals={'total_loans': total}
        )

    def overdue_report(self, as_of: Optional[datetime] = None) -> ReportResult:
        """Loans past their end date with a balance, whether or not the sweep has run"""
        now = as_of or datetime.now(timezone.utc)
        late = [
            loan for loan in self._loans()
            if loan.status == LoanStatus.OVERDUE or check_overdue(loan, now)
        ]
        rows = [
            {
                'loan_id': loan.loan_id,
                'status': loan.status.value,
                'end_date': loan.end_date,
                'days_overdue': days_overdue(loan, now),
                'remaining_balance': loan.remaining_balance,
            }
            for loan in sorted(late, key=lambda loan: loan.end_date or now)
        ]
        return ReportResult(
            report_id="overdue",
            generated_at=datetime.now(timezone.utc),
            period_end=now,
            data=rows,
            totals={
                'count': len(rows),
                'remaining_balance': sum((r['remaining_balance'] for r in rows), ZERO),
            }
        )

    def date_range_report(
        self,
        start: Union[date, datetime],
        end: Union[date, datetime]
    ) -> ReportResult:
        """Disbursements, repayments and new customers between two dates (inclusive)"""
        if start is None or end is None:
            raise ValidationError("start and end dates are required", field="date_range")
        period_start = self._day_start(start)
        period_end = self._day_start(end) + timedelta(days=1) - timedelta(microseconds=1)
        if period_end < period_start:
            raise ValidationError("end date is before start date", field="date_range")

        loans = [loan for loan in self._loans() if _in_range(loan.disbursement_date, period_start, period_end)]
        repayments = [
            r for r in self._repayments()
            if r.status == RepaymentStatus.APPROVED and _in_range(r.payment_date, period_start, period_end)
        ]
        new_customers = sum(
            1 for c in self._customers()
            if _in_range(parse_datetime(c.get('created_at')), period_start, period_end)
        )

        totals = {
            'loans_count': len(loans),
            'total_disbursed': sum((loan.principal_amount for loan in loans), ZERO),
            'repayments_count': len(repayments),
            'total_repaid': sum((r.payment_amount for r in repayments), ZERO),
            'total_interest': sum((r.interest_paid for r in repayments), ZERO),
            'new_customers': new_customers,
        }
        rows = [
            {'type': 'loan', 'reference': loan.loan_id, 'date': loan.disbursement_date,
             'amount': loan.principal_amount}
            for loan in loans
        ] + [
            {'type': 'repayment', 'reference': r.receipt_id, 'date': r.payment_date,
             'amount': r.payment_amount}
            for r in repayments
        ]
        rows.sort(key=lambda r: r['date'])

        return ReportResult(
            report_id="date_range",
            generated_at=datetime.now(timezone.utc),
            period_start=period_start,
            period_end=period_end,
            data=rows,
            totals=totals
        )

    def export_summary(self) -> ReportResult:
        """Flat listing of customers, loans and approved repayments for spreadsheet export"""
        customers = {c['id']: c for c in self._customers()}

        def customer_ref(customer_key: str) -> Optional[str]:
            customer = customers.get(customer_key)
            return customer['customer_id'] if customer else None

        rows: List[Dict[str, Any]] = []
        for c in customers.values():
            rows.append({
                'record_type': 'customer',
                'reference': c['customer_id'],
                'customer_id': c['customer_id'],
                'name': f"{c['first_name']} {c['last_name']}",
                'status': c['status'],
                'loan_product': c.get('preferred_loan_product'),
                'amount': None,
                'date': c['created_at'],
            })
        for loan in self._loans():
            rows.append({
                'record_type': 'loan',
                'reference': loan.loan_id,
                'customer_id': customer_ref(loan.customer_id),
                'name': None,
                'status': loan.status.value,
                'loan_product': loan.loan_product.value,
                'amount': loan.principal_amount,
                'date': loan.disbursement_date,
            })
        for r in self._repayments():
            if r.status != RepaymentStatus.APPROVED:
                continue
            rows.append({
                'record_type': 'repayment',
                'reference': r.receipt_id,
                'customer_id': customer_ref(r.customer_id),
                'name': None,
                'status': r.status.value,
                'loan_product': None,
                'amount': r.payment_amount,
                'date': r.payment_date,
            })

        return ReportResult(
            report_id="export_summary",
            generated_at=datetime.now(timezone.utc),
            data=rows
        )

    def export_report(self, result: ReportResult, format: ReportFormat) -> Union[Dict, str]:
        """
        Export report result in specified format
        """
        if format == ReportFormat.DICT:
            return to_storable({
                'report_id': result.report_id,
                'generated_at': result.generated_at,
                'period_start': result.period_start,
                'period_end': result.period_end,
                'data': result.data,
                'totals': result.totals,
                'metadata': result.metadata
            })

        elif format == ReportFormat.JSON:
            export_dict = self.export_report(result, ReportFormat.DICT)
            return json.dumps(export_dict, indent=2, default=str)

        elif format == ReportFormat.CSV:
            output = io.StringIO()

            if result.data:
                # Get headers from first row
                headers = list(result.data[0].keys())
                writer = csv.DictWriter(output, fieldnames=headers)
                writer.writeheader()

                for row in result.data:
                    writer.writerow(to_storable(row))

            csv_content = output.getvalue()
            output.close()
            return csv_content

        else:
            raise ValidationError(f"unsupported export format: {format}", field="format")

    @staticmethod
    def _day_start(value: Union[date, datetime]) -> datetime:
        if isinstance(value, datetime):
            value = value.date()
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
