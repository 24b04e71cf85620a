# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Shared utilities: errors, retry, caches, timezone helpers, logging and alerts

Submodules are imported directly (``from utils.retry import RetryPolicy``);
this package stays empty so that config.py can import utils.errors
without pulling in modules that read config.
"""
