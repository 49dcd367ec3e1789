"""Billing domain - Mercado Pago checkout, webhooks and subscription sync"""
