"""Storefront checkout and order finalization service."""
