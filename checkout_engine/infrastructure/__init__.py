"""Infrastructure layer module.

Contains configuration, logging setup and clients for the external
storefront services.
"""
