"""
Fieldbook Loan Collection Core

Repayment scheduling and reconciliation for field-agent microfinance lending:
business-day calendars, installment schedules, payment allocation, remittance
tracking and delinquency classification. All money math uses Decimal.
"""

__version__ = "1.0.0"
