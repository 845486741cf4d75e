"""
Microlend Loan Management System

A microfinance loan-management backend: customer registration, short-term
loan lifecycle, interest-first repayment allocation and operational reports.
All financial math uses Decimal.
"""

__version__ = "1.0.0"
