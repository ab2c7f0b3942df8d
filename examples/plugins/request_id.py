"""
request_id — Example Hop Plugin (module hooks pattern)
=======================================================
Tags every proxied request with an ``X-Request-Id`` header and echoes it
back on the response, so client and upstream logs can be correlated.

Reference it from a rule::

    plugins:
      - ./examples/plugins/request_id.py
"""

import uuid

HEADER = "X-Request-Id"


def on_request(request, response):
    # Keep an id the client already sent
    request_id = request.headers.get(HEADER) or uuid.uuid4().hex
    request.headers[HEADER] = request_id
    request.context["request_id"] = request_id


def on_response(upstream, request, response):
    upstream.headers[HEADER] = request.context.get("request_id", "")
