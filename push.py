import logging

import requests

from services import EXPO_PUSH_URL, supabase
from utils import chunked, now_iso

logger = logging.getLogger(__name__)

EXPO_CHUNK_SIZE = 100


def get_target_devices(notification):
    query = (
        supabase.table("user_devices")
        .select("user_id, device_token, platform")
        .eq("is_active", True)
        .eq("push_enabled", True)
        .not_.is_("device_token", "null")
    )

    target_type = notification.get("target_type") or "all"
    if target_type == "all":
        return query.execute().data or []

    if target_type == "user" and notification.get("target_users"):
        return query.in_("user_id", notification["target_users"]).execute().data or []

    return []


def build_messages(notification, devices):
    tokens = [
        d["device_token"] for d in devices
        if d.get("device_token") and d["device_token"].startswith("ExponentPushToken")
    ]
    sent_at = now_iso()
    return [
        {
            "to": token,
            "sound": "default",
            "title": notification.get("title"),
            "body": notification.get("message"),
            "data": {
                "id": notification.get("id"),
                "type": notification.get("type") or "info",
                "action_type": notification.get("action_type") or "none",
                "action_value": notification.get("action_value"),
                "image_url": notification.get("image_url"),
                "sent_at": sent_at,
            },
            "priority": "high",
            "channelId": "default",
        }
        for token in tokens
    ]


def send_expo_push_notifications(notification, devices):
    messages = build_messages(notification, devices)
    if not messages:
        logger.info("No valid Expo push tokens found")
        return {"successful": 0, "failed": 0}

    successful = 0
    failed = 0

    for chunk in chunked(messages, EXPO_CHUNK_SIZE):
        try:
            res = requests.post(
                EXPO_PUSH_URL,
                json=chunk,
                headers={
                    "Accept": "application/json",
                    "Accept-encoding": "gzip, deflate",
                    "Content-Type": "application/json",
                },
                timeout=30,
            )
            res.raise_for_status()
            tickets = res.json().get("data") or []
        except (requests.RequestException, ValueError) as e:
            logger.error("Error sending push notification chunk: %s", e)
            failed += len(chunk)
            continue

        for ticket in tickets:
            if ticket.get("status") == "ok":
                successful += 1
            else:
                failed += 1
                logger.error("Push notification failed: %s", ticket)

    logger.info("Push notifications sent: %s successful, %s failed", successful, failed)
    return {"successful": successful, "failed": failed}


def process_notification(notification_id):
    """
    Deliver a notification: record per-user deliveries, push to devices
    and mark it sent. Reverts the row to draft and re-raises on failure.
    """
    try:
        res = supabase.table("notifications").select("*").eq("id", notification_id).maybe_single().execute()
        if not res or not res.data:
            raise ValueError("Notification not found")
        notification = res.data

        devices = get_target_devices(notification)
        logger.info("Processing notification %s for %s devices", notification_id, len(devices))

        user_ids = list(dict.fromkeys(d["user_id"] for d in devices))
        if user_ids:
            delivered_at = now_iso()
            supabase.table("user_notifications").upsert(
                [
                    {"notification_id": notification_id, "user_id": user_id, "delivered_at": delivered_at}
                    for user_id in user_ids
                ],
                on_conflict="notification_id,user_id",
            ).execute()

        push_results = send_expo_push_notifications(notification, devices)

        supabase.table("notifications").update({
            "status": "sent",
            "sent_at": now_iso(),
            "total_sent": len(user_ids),
            "total_delivered": push_results["successful"],
        }).eq("id", notification_id).execute()

        return {
            "total_sent": len(user_ids),
            "total_delivered": push_results["successful"],
            "failed": push_results["failed"],
        }

    except Exception:
        logger.exception("Process notification %s failed", notification_id)
        supabase.table("notifications").update({"status": "draft"}).eq("id", notification_id).execute()
        raise
