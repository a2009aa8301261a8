"""Settlement · Services Package

Cada servicio se importa desde su módulo:
- ledger_store          → LedgerStore (asientos, retenciones, transferencias)
- commission_calculator → CommissionCalculator
- affiliate_release     → AffiliateCommissionReleaseJob
- withdrawal_processor  → WithdrawalProcessor
- consistency_auditor   → ConsistencyAuditor
- settlement            → SettlementService (pago / entrega)
- tx                    → locks + unidad transaccional
"""
