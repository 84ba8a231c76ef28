SEGMENT_PENDING = "pending"
SEGMENT_PAID = "paid"
SEGMENT_FAILED = "failed"
SEGMENT_REFUNDED = "refunded"

SEGMENT_STATUSES = {SEGMENT_PENDING, SEGMENT_PAID, SEGMENT_FAILED, SEGMENT_REFUNDED}
PAYABLE_SEGMENT_STATUSES = {SEGMENT_PENDING, SEGMENT_FAILED}

LEDGER_PAYMENT = "payment"
LEDGER_REFUND = "refund"
LEDGER_REFUND_FAILED = "refund_failed"
LEDGER_CANCELLATION_FEE = "cancellation_fee"
LEDGER_WALLET_DEBIT = "wallet_debit"
LEDGER_WALLET_CREDIT = "wallet_credit"

GATEWAY_EVENT_PROCESSING = "processing"
GATEWAY_EVENT_SUCCEEDED = "succeeded"
GATEWAY_EVENT_IGNORED = "ignored"
GATEWAY_EVENT_ERROR = "error"
