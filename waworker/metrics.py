from __future__ import annotations

from prometheus_client import Counter, Gauge


WA_QR_ISSUED_TOTAL = Counter(
    "wa_qr_issued_total", "Total number of pairing QR payloads received from WhatsApp"
)
WA_CONNECTED_TOTAL = Counter(
    "wa_connected_total", "Total number of times the WhatsApp connection opened"
)
WA_DISCONNECT_TOTAL = Counter(
    "wa_disconnect_total",
    "Total number of WhatsApp connection closes",
    ["reason"],
)
WA_RECONNECT_SCHEDULED_TOTAL = Counter(
    "wa_reconnect_scheduled_total",
    "Total number of delayed reconnects scheduled after a connection close",
)
WA_SEND_TOTAL = Counter(
    "wa_send_total",
    "Outbound WhatsApp sends grouped by message kind and result",
    ["kind", "result"],
)
WA_MESSAGES_IN_TOTAL = Counter(
    "wa_messages_in_total", "Total number of inbound WhatsApp messages observed"
)
WA_IP_REJECTED_TOTAL = Counter(
    "wa_ip_rejected_total", "Total number of requests rejected by the IP allow-list"
)
WA_SESSION_CONNECTED = Gauge(
    "wa_session_connected", "1 when the WhatsApp session is connected, 0 otherwise"
)

__all__ = [
    "WA_QR_ISSUED_TOTAL",
    "WA_CONNECTED_TOTAL",
    "WA_DISCONNECT_TOTAL",
    "WA_RECONNECT_SCHEDULED_TOTAL",
    "WA_SEND_TOTAL",
    "WA_MESSAGES_IN_TOTAL",
    "WA_IP_REJECTED_TOTAL",
    "WA_SESSION_CONNECTED",
]
