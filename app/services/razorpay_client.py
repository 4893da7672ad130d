"""Razorpay API Client for orders, payments and refunds."""
import requests
from typing import Dict, Any, Optional
from flask import current_app


class RazorpayClient:
    """Thin HTTP client for the Razorpay REST API (basic auth with key id/secret)."""

    def __init__(self, key_id: Optional[str] = None, key_secret: Optional[str] = None,
                 base_url: Optional[str] = None, timeout: Optional[int] = None):
        """
        Initialize Razorpay client.

        Args:
            key_id: API key id. If None, reads RAZORPAY_KEY_ID from app config
            key_secret: API key secret. If None, reads RAZORPAY_KEY_SECRET from app config
            base_url: API root, default https://api.razorpay.com/v1
            timeout: Request timeout in seconds (RAZORPAY_TIMEOUT)
        """
        config = current_app.config
        self.key_id = key_id or config.get('RAZORPAY_KEY_ID')
        self.key_secret = key_secret or config.get('RAZORPAY_KEY_SECRET')
        if not self.key_id or not self.key_secret:
            raise ValueError("RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET are required")

        self.base_url = (base_url or config.get('RAZORPAY_BASE_URL', 'https://api.razorpay.com/v1')).rstrip('/')
        self.timeout = timeout or config.get('RAZORPAY_TIMEOUT', 10)
        self.auth = (self.key_id, self.key_secret)
        self.headers = {'Content-Type': 'application/json'}

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = requests.request(
                method,
                url,
                json=payload,
                auth=self.auth,
                headers=self.headers,
                timeout=self.timeout
            )
            response.raise_for_status()
            return response.json()

        except requests.HTTPError as e:
            current_app.logger.error(f"[RAZORPAY] {method} {path} failed: {e.response.text}")
            raise
        except requests.Timeout:
            current_app.logger.error(f"[RAZORPAY] {method} {path} timed out after {self.timeout}s")
            raise
        except Exception as e:
            current_app.logger.error(f"[RAZORPAY] Unexpected error: {str(e)}")
            raise

    def create_order(self, amount: int, currency: str, receipt: str,
                     notes: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Create a Razorpay order (payment intent).

        Args:
            amount: Amount in paise
            currency: ISO currency code (INR)
            receipt: Merchant receipt reference
            notes: Free-form key/value metadata

        Returns:
            Dict with the gateway order, including `id` and `status`

        Raises:
            requests.HTTPError: If the API returns an error
            requests.Timeout: If the gateway does not answer in time
        """
        payload = {
            'amount': amount,
            'currency': currency,
            'receipt': receipt,
            'payment_capture': 1,
            'notes': notes or {},
        }
        current_app.logger.info(f"[RAZORPAY] Creating order for receipt {receipt} ({amount} {currency})")
        data = self._request('POST', '/orders', payload)
        current_app.logger.info(f"[RAZORPAY] Order created: {data.get('id')}")
        return data

    def refund_payment(self, payment_id: str, amount: int,
                       notes: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Refund a captured payment, fully or partially.

        Args:
            payment_id: Razorpay payment id (pay_...)
            amount: Amount to refund in paise

        Returns:
            Dict with the refund, including `id` and `status`
        """
        payload = {'amount': amount, 'notes': notes or {}}
        current_app.logger.info(f"[RAZORPAY] Refunding {amount} on payment {payment_id}")
        data = self._request('POST', f'/payments/{payment_id}/refund', payload)
        current_app.logger.info(f"[RAZORPAY] Refund created: {data.get('id')} - {data.get('status')}")
        return data
