"""Workspace notification configurations.

A declared notification matches a remote one with the same name and
destination type. Matches are updated when they differ, missing ones are
created and every other configuration on the workspace is deleted. Tokens
are write-only on the platform, so a token change alone is not detected.
"""

from __future__ import annotations

import logging

from .models import Notification, Workspace
from .remote import (
    NotificationOptions,
    RemoteClient,
    RemoteNotification,
    ResourceNotFound,
    collect_pages,
)

logger = logging.getLogger(__name__)


async def resolve_email_users(
    remote: RemoteClient, organization: str, notifications: list[Notification]
) -> dict[str, str]:
    """Map every emailUsers address to the id of the member using it.

    Raises:
        ResourceNotFound: If an address belongs to no organization member.
    """
    emails = sorted({email for n in notifications for email in n.email_users})
    if not emails:
        return {}
    memberships = await collect_pages(
        lambda page: remote.list_memberships(organization, emails=emails, page=page)
    )
    users = {membership.email: membership.user_id for membership in memberships}
    missing = [email for email in emails if email not in users]
    if missing:
        raise ResourceNotFound(
            f"No member of organization {organization!r} uses email {', '.join(missing)}"
        )
    return users


def notification_options(notification: Notification, users: dict[str, str]) -> NotificationOptions:
    return NotificationOptions(
        name=notification.name,
        destination_type=notification.type,
        enabled=notification.enabled,
        url=notification.url,
        token=notification.token,
        triggers=list(notification.triggers),
        email_addresses=list(notification.email_addresses),
        email_user_ids=[users[email] for email in notification.email_users],
    )


async def sync_notifications(remote: RemoteClient, record: Workspace, workspace_id: str) -> None:
    users = await resolve_email_users(remote, record.spec.organization, record.spec.notifications)
    declared = {
        (n.name, n.type): notification_options(n, users) for n in record.spec.notifications
    }
    existing = await collect_pages(
        lambda page: remote.list_notifications(workspace_id, page=page)
    )
    log_extra = {"record": str(record.key), "workspace_id": workspace_id}

    matched: dict[tuple[str, str], RemoteNotification] = {}
    extras: list[RemoteNotification] = []
    for notification in existing:
        slot = (notification.name, notification.destination_type)
        if slot in declared and slot not in matched:
            matched[slot] = notification
        else:
            extras.append(notification)

    for slot, options in declared.items():
        current = matched.get(slot)
        if current is None:
            await remote.create_notification(workspace_id, options)
            logger.info("Notification created", extra={**log_extra, "notification": options.name})
        elif not current.matches(options):
            await remote.update_notification(current.id, options)
            logger.info("Notification updated", extra={**log_extra, "notification": options.name})

    for notification in extras:
        try:
            await remote.delete_notification(notification.id)
        except ResourceNotFound:
            pass
        logger.info("Notification deleted", extra={**log_extra, "notification": notification.name})
