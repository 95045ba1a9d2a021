"""
Rate limiting configuration and custom handlers
"""
from flask import jsonify, request


def handle_rate_limit_exceeded(e):
    """Custom handler for rate limit errors."""
    return jsonify({
        'error': 'Rate limit exceeded',
        'message': str(e.description),
        'retry_after': e.retry_after if hasattr(e, 'retry_after') else None
    }), 429


def get_ip_for_ratelimit():
    """Get client IP for rate limiting (handles proxies)."""
    # Check for X-Forwarded-For header (proxy/load balancer)
    if request.headers.get('X-Forwarded-For'):
        return request.headers.get('X-Forwarded-For').split(',')[0].strip()
    # Check for X-Real-IP header
    if request.headers.get('X-Real-IP'):
        return request.headers.get('X-Real-IP')
    # Fall back to remote_addr
    return request.remote_addr or '127.0.0.1'


# Rate limit configurations for different endpoint types
RATE_LIMITS = {
    'webhook': '300 per minute',        # Devices may push bursts after reconnecting
    'polling_control': '20 per minute', # Start/stop/restart of the scheduler
    'status_sync': '30 per minute',     # Live device queries
    'api_default': '100 per minute',
}
