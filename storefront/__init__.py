"""Storefront checkout service: order and payment lifecycle."""
