"""
Gemini Proxy - Authenticated Gemini API Gateway

An authenticated reverse proxy in front of the Google Gemini API with
per-user quotas, cost accounting and asynchronous usage recording.
"""

__version__ = "1.0.0"
__author__ = "Gemini Proxy"
