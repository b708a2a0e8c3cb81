"""Backend endpoint paths, relative to ``Settings.api_base_url``."""

AUTH_LOGIN = "/api/auth/login"
AUTH_REGISTER = "/api/auth/register"
AUTH_REFRESH = "/api/auth/refresh"
AUTH_LOGOUT = "/api/auth/logout"

WALLETS = "/api/v1/wallets"
WALLET_BALANCE = "/api/v1/wallets/balance/{address}"

PAYMENTS_P2P = "/api/v1/payments/p2p"
PAYMENTS_MERCHANT = "/api/v1/payments/merchant"
PAYMENT_STATUS = "/api/v1/payments/status/{transaction_id}"
TRANSACTIONS = "/api/v1/transactions"

MERCHANT_DASHBOARD = "/api/v1/merchant/dashboard"
MERCHANT_INVOICES = "/api/v1/merchant/invoices"
MERCHANT_INVOICE = "/api/v1/merchant/invoices/{invoice_id}"
MERCHANT_ANALYTICS = "/api/v1/merchant/analytics"

ADMIN_SYSTEM_HEALTH = "/api/v1/admin/system/health"
ADMIN_USERS = "/api/v1/admin/users"
ADMIN_TRANSACTIONS = "/api/v1/admin/transactions"

EXPORT = "/api/v1/export/{data_type}"
