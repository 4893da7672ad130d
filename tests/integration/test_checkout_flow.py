"""
Integration tests for the end-to-end checkout flow.
"""

from app.models import Cart, Order, Payment, ProductStock, Promotion


class TestRazorpayCheckout:
    """Cart -> Razorpay order -> signature verification -> order."""

    def test_pay_then_place_order(self, client, session, gateway, customer, auth_headers, shirt, address, sign):
        client.post('/cart/items', json={'productId': shirt.id}, headers=auth_headers)
        client.post('/cart/shipping', json={'method': 'standard'}, headers=auth_headers)

        response = client.post('/payments/razorpay/order', headers=auth_headers)
        assert response.status_code == 201
        intent = response.get_json()['data']
        assert intent['amount'] == 68900
        assert intent['currency'] == 'INR'
        assert intent['key_id'] == 'rzp_test_key'

        gateway_order_id = intent['razorpay_order_id']
        response = client.post('/payments/razorpay/verify', json={
            'razorpay_order_id': gateway_order_id,
            'razorpay_payment_id': 'pay_FLOW0001',
            'razorpay_signature': sign(gateway_order_id, 'pay_FLOW0001'),
        })
        assert response.status_code == 200
        assert response.get_json()['data']['status'] == 'captured'

        response = client.post('/orders', json={
            'shippingAddress': address,
            'paymentMethod': 'razorpay',
            'razorpayOrderId': gateway_order_id,
        }, headers=auth_headers)

        assert response.status_code == 201
        order = response.get_json()['data']
        assert order['status'] == 'processing'
        assert order['payment']['status'] == 'paid'
        assert order['payment']['transaction_id'] == 'pay_FLOW0001'
        assert order['pricing']['total'] == 689.0
        assert order['order_number'].startswith('ORD-')

        payment = session.query(Payment).filter_by(gateway_order_id=gateway_order_id).one()
        assert payment.order_id == order['id']
        assert session.query(Cart).filter_by(user_id=customer.id).one().items == []

    def test_cart_grown_after_payment_is_rejected(self, client, session, gateway, auth_headers, shirt, address, sign):
        client.post('/cart/items', json={'productId': shirt.id}, headers=auth_headers)
        intent = client.post('/payments/razorpay/order', headers=auth_headers).get_json()['data']
        gateway_order_id = intent['razorpay_order_id']
        client.post('/payments/razorpay/verify', json={
            'razorpay_order_id': gateway_order_id,
            'razorpay_payment_id': 'pay_FLOW0003',
            'razorpay_signature': sign(gateway_order_id, 'pay_FLOW0003'),
        })
        client.post('/cart/items', json={'productId': shirt.id, 'quantity': 5}, headers=auth_headers)

        response = client.post('/orders', json={
            'shippingAddress': address,
            'paymentMethod': 'razorpay',
            'razorpayOrderId': gateway_order_id,
        }, headers=auth_headers)

        assert response.status_code == 409
        assert response.get_json()['success'] is False
        assert session.query(Order).count() == 0

    def test_bad_signature_is_rejected(self, client, gateway, auth_headers, shirt):
        client.post('/cart/items', json={'productId': shirt.id}, headers=auth_headers)
        intent = client.post('/payments/razorpay/order', headers=auth_headers).get_json()['data']

        response = client.post('/payments/razorpay/verify', json={
            'razorpay_order_id': intent['razorpay_order_id'],
            'razorpay_payment_id': 'pay_FLOW0002',
            'razorpay_signature': 'deadbeef',
        })

        assert response.status_code == 400
        assert response.get_json()['success'] is False

    def test_verify_requires_all_fields(self, client):
        response = client.post('/payments/razorpay/verify', json={'razorpay_order_id': 'order_x'})
        assert response.status_code == 400

    def test_empty_cart_cannot_create_intent(self, client, gateway, auth_headers):
        response = client.post('/payments/razorpay/order', headers=auth_headers)

        assert response.status_code == 400
        gateway.create_order.assert_not_called()

    def test_guest_can_create_intent(self, client, gateway, shirt):
        client.post('/cart/items', json={'productId': shirt.id, 'quantity': 2})

        response = client.post('/payments/razorpay/order')

        assert response.status_code == 201
        assert response.get_json()['data']['amount'] == 118000

    def test_intent_for_existing_order(self, client, gateway, auth_headers, place_order):
        order = place_order(payment_method='razorpay')

        response = client.post(f'/payments/razorpay/order/{order.id}', headers=auth_headers)

        assert response.status_code == 201
        assert response.get_json()['data']['amount'] == 68900
        assert response.get_json()['data']['receipt'] == order.order_number


class TestCashOnDelivery:
    def test_cod_order(self, client, session, auth_headers, shirt, address):
        client.post('/cart/items', json={'productId': shirt.id, 'quantity': 2}, headers=auth_headers)

        response = client.post('/orders', json={
            'shippingAddress': address,
            'paymentMethod': 'cod',
            'notes': 'Ring the bell',
        }, headers=auth_headers)

        assert response.status_code == 201
        order = response.get_json()['data']
        assert order['status'] == 'pending'
        assert order['payment'] == {
            'method': 'cod', 'status': 'pending', 'transaction_id': None,
            'gateway_order_id': None, 'paid_at': None,
        }
        # 1000 + 180 tax, standard shipping is free above 999
        assert order['pricing'] == {
            'subtotal': 1000.0, 'tax': 180.0, 'shipping': 0.0, 'discount': 0.0, 'total': 1180.0
        }
        assert order['billing']['address']['city'] == 'Bengaluru'
        assert [n['text'] for n in order['notes']] == ['Ring the bell']

        stock = session.query(ProductStock).filter_by(product_id=shirt.id, variant_id=None).one()
        assert stock.reserved == 2

    def test_coupon_order(self, client, session, auth_headers, product_factory, save10, address):
        tv = product_factory('TV-001', 'Television', '1000.00')
        client.post('/cart/items', json={'productId': tv.id, 'quantity': 2}, headers=auth_headers)
        client.post('/cart/coupon', json={'code': 'SAVE10'}, headers=auth_headers)

        response = client.post('/orders', json={'shippingAddress': address, 'paymentMethod': 'cod'}, headers=auth_headers)

        assert response.status_code == 201
        order = response.get_json()['data']
        assert order['pricing']['discount'] == 200.0
        assert order['pricing']['total'] == 2160.0
        assert order['coupon_applied'] == {'code': 'SAVE10', 'discount': 200.0}

        session.expire_all()
        assert session.get(Promotion, save10.id).usage_count == 1

    def test_missing_address_fields(self, client, auth_headers, shirt, address):
        client.post('/cart/items', json={'productId': shirt.id}, headers=auth_headers)
        del address['city']

        response = client.post('/orders', json={'shippingAddress': address, 'paymentMethod': 'cod'}, headers=auth_headers)

        assert response.status_code == 400
        assert response.get_json()['error']['missing'] == ['city']

    def test_unknown_payment_method(self, client, auth_headers, shirt, address):
        client.post('/cart/items', json={'productId': shirt.id}, headers=auth_headers)

        response = client.post('/orders', json={'shippingAddress': address, 'paymentMethod': 'barter'}, headers=auth_headers)
        assert response.status_code == 400

    def test_empty_cart(self, client, session, auth_headers, address):
        response = client.post('/orders', json={'shippingAddress': address, 'paymentMethod': 'cod'}, headers=auth_headers)

        assert response.status_code == 400
        assert session.query(Order).count() == 0

    def test_guest_cannot_place_order(self, client, address):
        response = client.post('/orders', json={'shippingAddress': address, 'paymentMethod': 'cod'})
        assert response.status_code == 401
