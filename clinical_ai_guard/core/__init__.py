"""
Core modules for Clinical AI Guard.

This package contains admission control, response caching, failure
classification, monitoring, and the gateway that composes them.
"""
