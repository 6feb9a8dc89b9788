from pydantic import BaseModel, Field, EmailStr
from typing import Optional, List, Dict, Any
from datetime import datetime

# ============================================
# LAND MODELS
# ============================================
class RSNumberCreate(BaseModel):
    rs_number: str
    project_name: Optional[str] = None
    location: Optional[str] = None
    total_area: float = Field(gt=0)
    unit_type: str  # Acre, Katha, Sq Ft, Decimal, Bigha
    description: Optional[str] = None

class RSNumberUpdate(BaseModel):
    project_name: Optional[str] = None
    location: Optional[str] = None
    description: Optional[str] = None

class AreaCorrection(BaseModel):
    total_area: float = Field(gt=0)
    reason: Optional[str] = None

class PlotCreate(BaseModel):
    rs_number_id: str
    plot_number: str
    area: float = Field(gt=0)
    status: str = "Available"  # Available, Reserved, Sold, Blocked
    consume_area: bool = True
    client_id: Optional[str] = None
    sale_date: Optional[datetime] = None
    notes: Optional[str] = None

class PlotResize(BaseModel):
    area: float = Field(gt=0)

class PlotStatusUpdate(BaseModel):
    status: str

# ============================================
# CLIENT MODELS
# ============================================
class ClientCreate(BaseModel):
    name: str
    phone: str
    email: Optional[EmailStr] = None
    address: Optional[str] = None
    national_id: Optional[str] = None
    notes: Optional[str] = None

class ClientUpdate(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[EmailStr] = None
    address: Optional[str] = None
    national_id: Optional[str] = None
    notes: Optional[str] = None

# ============================================
# SALE MODELS
# ============================================
class StageInput(BaseModel):
    name: str
    percentage: float = Field(gt=0, le=100)
    due_date: Optional[datetime] = None

class SaleCreate(BaseModel):
    client_id: str
    plot_id: str
    total_price: float = Field(gt=0)
    sale_date: Optional[datetime] = None
    stages: Optional[List[StageInput]] = None  # Default 10/70/15/5 plan if omitted
    notes: Optional[str] = None

class SaleStatusChange(BaseModel):
    reason: Optional[str] = None

# ============================================
# APPROVAL MODELS (Receipts, Expenses)
# ============================================
class InstrumentDetails(BaseModel):
    bank_name: Optional[str] = None
    cheque_number: Optional[str] = None
    cheque_date: Optional[datetime] = None

class ReceiptCreate(BaseModel):
    sale_id: str
    client_id: Optional[str] = None
    receipt_type: str = "Installment"
    amount: float = Field(gt=0)
    method: str = "Cash"
    instrument_details: Optional[InstrumentDetails] = None
    account_type: Optional[str] = None  # bank, cash
    account_id: Optional[str] = None
    receipt_date: Optional[datetime] = None
    notes: Optional[str] = None

class ReceiptUpdate(BaseModel):
    receipt_type: Optional[str] = None
    amount: Optional[float] = Field(default=None, gt=0)
    method: Optional[str] = None
    instrument_details: Optional[InstrumentDetails] = None
    receipt_date: Optional[datetime] = None
    notes: Optional[str] = None

class ExpenseCategoryCreate(BaseModel):
    name: str
    description: Optional[str] = None

class ExpenseCreate(BaseModel):
    category_id: str
    amount: float = Field(gt=0)
    expense_date: Optional[datetime] = None
    vendor: Optional[str] = None
    description: Optional[str] = None
    payment_method: str = "Cash"
    instrument_details: Optional[InstrumentDetails] = None
    account_type: Optional[str] = None
    account_id: Optional[str] = None

class ExpenseUpdate(BaseModel):
    category_id: Optional[str] = None
    amount: Optional[float] = Field(default=None, gt=0)
    expense_date: Optional[datetime] = None
    vendor: Optional[str] = None
    description: Optional[str] = None
    payment_method: Optional[str] = None
    instrument_details: Optional[InstrumentDetails] = None

class ApprovalAction(BaseModel):
    remarks: Optional[str] = None

# ============================================
# CANCELLATION MODELS
# ============================================
class CancellationCreate(BaseModel):
    sale_id: str
    reason: str
    cancellation_date: Optional[datetime] = None
    office_charge_percent: Optional[float] = Field(default=None, ge=0, le=100)  # Setting default if omitted
    other_deductions: float = Field(default=0, ge=0)
    notes: Optional[str] = None

class CancellationReject(BaseModel):
    reason: str

class RefundPaymentCreate(BaseModel):
    amount: float = Field(gt=0)
    method: str = "Bank Transfer"
    payment_date: Optional[datetime] = None
    account_type: Optional[str] = None
    account_id: Optional[str] = None
    reference: Optional[str] = None
    notes: Optional[str] = None

class RefundScheduleCreate(BaseModel):
    cancellation_id: str
    number_of_installments: int = Field(default=1, ge=1, le=120)
    start_date: Optional[datetime] = None  # First due date; monthly after that
    notes: Optional[str] = None

class RefundPay(BaseModel):
    method: str = "Bank Transfer"
    payment_date: Optional[datetime] = None
    account_type: Optional[str] = None
    account_id: Optional[str] = None
    instrument_details: Optional[InstrumentDetails] = None
    reference: Optional[str] = None
    notes: Optional[str] = None

# ============================================
# INSTALLMENT SCHEDULE MODELS
# ============================================
class InstallmentScheduleCreate(BaseModel):
    sale_id: str
    number_of_installments: int = Field(ge=1, le=240)
    frequency: str = "Monthly"  # Monthly, Quarterly, Half-Yearly, Yearly
    start_date: Optional[datetime] = None
    total_amount: Optional[float] = Field(default=None, gt=0)  # Whole Installments stage if omitted
    notes: Optional[str] = None

class InstallmentRefresh(BaseModel):
    as_of: Optional[datetime] = None

# ============================================
# CHEQUE REGISTER MODELS
# ============================================
class ChequeCreate(BaseModel):
    cheque_number: str
    bank_name: str
    branch_name: Optional[str] = None
    cheque_type: str = "Current"  # Current, PDC
    issue_date: datetime
    due_date: datetime
    amount: float = Field(gt=0)
    client_id: str
    sale_id: Optional[str] = None
    receipt_id: Optional[str] = None
    refund_id: Optional[str] = None
    notes: Optional[str] = None

class ChequeUpdate(BaseModel):
    cheque_number: Optional[str] = None
    bank_name: Optional[str] = None
    branch_name: Optional[str] = None
    cheque_type: Optional[str] = None
    issue_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    amount: Optional[float] = Field(default=None, gt=0)
    notes: Optional[str] = None

class ChequeClear(BaseModel):
    cleared_date: Optional[datetime] = None

class ChequeBounce(BaseModel):
    reason: str
    bounce_date: Optional[datetime] = None

class ChequeCancel(BaseModel):
    reason: str

# ============================================
# ACCOUNT & SETTINGS MODELS
# ============================================
class BankAccountCreate(BaseModel):
    bank_name: str
    branch: Optional[str] = None
    account_number: str
    account_name: str
    account_kind: str = "Savings"  # Savings, Current
    opening_balance: float = Field(default=0, ge=0)
    description: Optional[str] = None

class CashAccountCreate(BaseModel):
    name: str
    opening_balance: float = Field(default=0, ge=0)
    description: Optional[str] = None

class SystemSettingUpsert(BaseModel):
    value: Any
    type: Optional[str] = None  # string, number, boolean, json
    category: Optional[str] = None
    description: Optional[str] = None

class ListResponse(BaseModel):
    items: List[Dict[str, Any]]
    total: int
    page: int
    limit: int
