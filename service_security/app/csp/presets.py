"""
Layered CSP presets: base banking policy, environment overlays and
feature overlays. Layers are merged by set union, never replaced.
"""

from typing import Dict, List

NONCE_PLACEHOLDER = "'nonce-{nonce}'"

BASE_POLICY: Dict[str, List[str]] = {
    "default-src": ["'none'"],
    "script-src": ["'self'", NONCE_PLACEHOLDER, "'strict-dynamic'"],
    "style-src": ["'self'", NONCE_PLACEHOLDER],
    "img-src": ["'self'", "data:", "blob:"],
    "font-src": ["'self'"],
    "connect-src": ["'self'"],
    "media-src": ["'none'"],
    "object-src": ["'none'"],
    "child-src": ["'none'"],
    "frame-src": ["'none'"],
    "worker-src": ["'self'"],
    "manifest-src": ["'self'"],
    "base-uri": ["'self'"],
    "form-action": ["'self'"],
    "frame-ancestors": ["'none'"],
}

ENVIRONMENT_OVERLAYS: Dict[str, Dict[str, List[str]]] = {
    "development": {
        "script-src": [
            "'unsafe-eval'",
            "'unsafe-inline'",
            "localhost:*",
            "127.0.0.1:*",
            "ws://localhost:*",
            "ws://127.0.0.1:*",
        ],
        "style-src": ["'unsafe-inline'", "localhost:*", "127.0.0.1:*"],
        "img-src": ["localhost:*", "127.0.0.1:*"],
        "font-src": ["data:"],
        "connect-src": [
            "ws://localhost:*",
            "ws://127.0.0.1:*",
            "http://localhost:*",
            "https://localhost:*",
        ],
        "worker-src": ["blob:"],
    },
    "testing": {
        "script-src": ["https://testing-api.kbstar.com"],
        "connect-src": ["https://testing-api.kbstar.com", "https://staging-analytics.example.com"],
    },
    "production": {
        "upgrade-insecure-requests": [],
        "block-all-mixed-content": [],
        "require-trusted-types-for": ["'script'"],
        "trusted-types": ["kb-banking-policy", "default"],
    },
}

FEATURE_OVERLAYS: Dict[str, Dict[str, List[str]]] = {
    "payment": {
        "script-src": ["https://pay.kbstar.com", "https://js.tosspayments.com", "https://service.iamport.kr"],
        "connect-src": ["https://api.kbstar.com", "https://api.tosspayments.com", "https://api.iamport.kr"],
        "frame-src": ["https://pay.kbstar.com", "https://js.tosspayments.com", "https://service.iamport.kr"],
        "child-src": ["https://pay.kbstar.com"],
    },
    "authentication": {
        "script-src": ["https://auth.kbstar.com", "https://nice.checkplus.co.kr", "https://samsungpass.com"],
        "connect-src": ["https://auth.kbstar.com", "https://nice.checkplus.co.kr"],
        "frame-src": ["https://auth.kbstar.com", "https://nice.checkplus.co.kr"],
    },
    "analytics": {
        "script-src": [
            "https://www.googletagmanager.com",
            "https://www.google-analytics.com",
            "https://connect.facebook.net",
            "https://analytics.tiktok.com",
        ],
        "img-src": [
            "https://www.google-analytics.com",
            "https://www.facebook.com",
            "https://analytics.tiktok.com",
            "https://t.co",
        ],
        "connect-src": [
            "https://api.kbstar.com",
            "https://www.google-analytics.com",
            "https://analytics.google.com",
            "https://graph.facebook.com",
            "https://analytics.tiktok.com",
        ],
    },
    "pwa": {
        "worker-src": ["blob:"],
        "manifest-src": ["'self'"],
        "img-src": ["https://kbstar.com"],
    },
    "mobile": {
        "default-src": [
            "'self'",
            "capacitor://localhost",
            "ionic://localhost",
            "http://localhost",
            "https://localhost",
            "capacitor-electron://-",
        ],
        "script-src": ["'unsafe-eval'", "capacitor://localhost", "ionic://localhost"],
        "style-src": ["'unsafe-inline'", "capacitor://localhost"],
        "img-src": ["capacitor://localhost", "ionic://localhost", "https://kbstar.com"],
        "connect-src": ["https://api.kbstar.com", "capacitor://localhost", "ionic://localhost"],
    },
    "highSecurity": {
        "connect-src": ["https://api.kbstar.com"],
        "frame-ancestors": ["'none'"],
        "require-trusted-types-for": ["'script'"],
        "trusted-types": ["banking-policy", "default"],
        "upgrade-insecure-requests": [],
        "block-all-mixed-content": [],
    },
}

FEATURE_ORDER = tuple(FEATURE_OVERLAYS)

SECURITY_HEADERS: Dict[str, str] = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": ", ".join([
        "camera=()",
        "microphone=()",
        "geolocation=(self)",
        "payment=(self)",
        "usb=()",
        "magnetometer=()",
        "gyroscope=()",
        "accelerometer=()",
        "fullscreen=(self)",
        "display-capture=()",
    ]),
    "Cross-Origin-Embedder-Policy": "require-corp",
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
}

HSTS_HEADER = "max-age=31536000; includeSubDomains; preload"
