"""
Citizen-facing message texts per notification type.

SMS and KAKAO share the short text; EMAIL gets subject + HTML + plain text.
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass
from typing import Any, Mapping

from app.core.config import get_settings
from app.schemas.notification import NotificationChannel, NotificationType

_BUTTON_STYLE = (
    "background-color: #2C4A7A; color: white; padding: 10px 20px; "
    "text-decoration: none; border-radius: 5px;"
)


@dataclass(frozen=True)
class EmailContent:
    subject: str
    html: str
    text: str


def _links(data: Mapping[str, Any]) -> tuple[str, str]:
    settings = get_settings()
    base = (settings.app_url or "").rstrip("/")
    timeline_url = str(data.get("timelineUrl") or f"{base}/timeline/{data.get('publicToken') or ''}")
    survey_url = str(data.get("surveyUrl") or timeline_url)
    return timeline_url, survey_url


def render_text(
    notification_type: str,
    recipient_name: str,
    template_data: Mapping[str, Any] | None,
) -> str:
    data = dict(template_data or {})
    name = recipient_name or "고객"
    timeline_url, survey_url = _links(data)
    ntype = NotificationType(notification_type)

    if ntype == NotificationType.TICKET_RECEIVED:
        ticket_no = data.get("ticketNumber") or data.get("ticketId") or ""
        return (
            f"[민원 접수]\n안녕하세요 {name}님.\n민원이 정상적으로 접수되었습니다.\n"
            f"접수번호: {ticket_no}\n\n진행상황: {timeline_url}"
        )
    if ntype == NotificationType.TICKET_ASSIGNED:
        department = data.get("department") or "민원실"
        return (
            f"[담당자 배정]\n{name}님의 민원이 담당자에게 배정되었습니다.\n"
            f"담당부서: {department}\n\n진행상황: {timeline_url}"
        )
    if ntype == NotificationType.TICKET_REPLIED:
        return f"[답변 완료]\n{name}님의 민원에 대한 답변이 등록되었습니다.\n\n답변 확인: {timeline_url}"
    if ntype == NotificationType.TICKET_CLOSED:
        return f"[처리 완료]\n{name}님의 민원이 처리 완료되었습니다.\n감사합니다.\n\n상세내용: {timeline_url}"
    if ntype == NotificationType.SLA_WARNING:
        return (
            f"[처리 지연 안내]\n{name}님의 민원 처리가 지연되고 있습니다.\n"
            f"빠른 시일 내에 처리하겠습니다.\n\n진행상황: {timeline_url}"
        )
    return (
        f"[만족도 조사]\n{name}님, 민원 처리에 만족하셨나요?\n"
        f"만족도 조사에 참여해주세요.\n\n참여하기: {survey_url}"
    )


_EMAIL_COPY: dict[NotificationType, tuple[str, str, str, str]] = {
    # subject, heading, body line, button label
    NotificationType.TICKET_RECEIVED: (
        "[민원 접수] 접수번호 {ticket_no}",
        "민원이 접수되었습니다",
        "귀하의 민원이 정상적으로 접수되었습니다.",
        "진행상황 확인하기",
    ),
    NotificationType.TICKET_ASSIGNED: (
        "[담당자 배정] 민원이 담당자에게 배정되었습니다",
        "담당자가 배정되었습니다",
        "귀하의 민원이 담당자에게 배정되어 처리 중입니다.",
        "진행상황 확인하기",
    ),
    NotificationType.TICKET_REPLIED: (
        "[답변 완료] 민원에 대한 답변이 등록되었습니다",
        "답변이 등록되었습니다",
        "귀하의 민원에 대한 답변이 등록되었습니다.",
        "전체 답변 확인하기",
    ),
    NotificationType.TICKET_CLOSED: (
        "[처리 완료] 민원이 처리 완료되었습니다",
        "민원 처리가 완료되었습니다",
        "귀하의 민원이 처리 완료되었습니다. 민원 처리에 관심을 가져주셔서 감사합니다.",
        "처리 결과 확인하기",
    ),
    NotificationType.SLA_WARNING: (
        "[처리 지연 안내] 민원 처리가 지연되고 있습니다",
        "처리가 지연되고 있습니다",
        "귀하의 민원 처리가 지연되고 있습니다. 빠른 시일 내에 처리하겠습니다.",
        "진행상황 확인하기",
    ),
    NotificationType.SATISFACTION_REQUEST: (
        "[만족도 조사] 민원 처리에 만족하셨나요?",
        "만족도 조사에 참여해주세요",
        "민원 처리 과정에 대한 의견을 들려주시면 서비스 개선에 활용하겠습니다.",
        "만족도 조사 참여하기",
    ),
}


def render_email(
    notification_type: str,
    recipient_name: str,
    template_data: Mapping[str, Any] | None,
) -> EmailContent:
    data = dict(template_data or {})
    ntype = NotificationType(notification_type)
    timeline_url, survey_url = _links(data)
    subject_tpl, heading, line, button = _EMAIL_COPY[ntype]
    ticket_no = data.get("ticketNumber") or data.get("ticketId") or ""
    subject = subject_tpl.format(ticket_no=ticket_no)
    link = survey_url if ntype == NotificationType.SATISFACTION_REQUEST else timeline_url

    esc = html.escape
    parts = [
        f"<h2>{esc(heading)}</h2>",
        f"<p>안녕하세요 {esc(recipient_name or '고객')}님,</p>",
        f"<p>{esc(line)}</p>",
    ]
    if ntype == NotificationType.TICKET_RECEIVED and ticket_no:
        parts.append(f"<p><strong>접수번호:</strong> {esc(str(ticket_no))}</p>")
    if ntype == NotificationType.TICKET_ASSIGNED:
        parts.append(f"<p><strong>담당부서:</strong> {esc(str(data.get('department') or '민원실'))}</p>")
    if ntype == NotificationType.TICKET_REPLIED and data.get("replyText"):
        parts.append(f"<p><strong>답변 내용:</strong></p><p>{esc(str(data['replyText']))}</p>")
    parts.append("<hr>")
    parts.append(f'<p><a href="{esc(link)}" style="{_BUTTON_STYLE}">{esc(button)}</a></p>')
    content = "\n".join(parts)

    body = (
        "<!DOCTYPE html>\n<html>\n<head><meta charset=\"UTF-8\"></head>\n"
        '<body style="font-family: -apple-system, BlinkMacSystemFont, sans-serif; '
        'line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto; padding: 20px;">\n'
        f"{content}\n"
        '<p style="font-size: 12px; color: #999;">본 메일은 발신전용입니다. 문의사항은 민원실로 연락해주세요.</p>\n'
        "</body>\n</html>\n"
    )
    text = re.sub(r"\s+", " ", re.sub(r"<[^>]*>", " ", content)).strip()
    text = f"{html.unescape(text)}\n\n{link}"
    return EmailContent(subject=subject, html=body, text=text)


def build_request_payload(job, channel: NotificationChannel) -> dict[str, Any]:
    """Provider-neutral request recorded in the attempt log and handed to adapters."""
    channel = NotificationChannel(channel)
    payload: dict[str, Any] = {
        "channel": channel.value,
        "type": job.type,
        "recipient_name": job.recipient_name,
    }
    if channel == NotificationChannel.EMAIL:
        content = render_email(job.type, job.recipient_name, job.template_data)
        payload.update(
            {
                "to": job.recipient_email,
                "subject": content.subject,
                "body_text": content.text,
                "body_html": content.html,
            }
        )
    else:
        payload.update(
            {
                "to": job.recipient_phone,
                "message": render_text(job.type, job.recipient_name, job.template_data),
                "template_data": dict(job.template_data or {}),
            }
        )
    return payload
