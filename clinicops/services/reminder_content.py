"""
Channel-specific reminder content.

Times are shown in the recipient's timezone; everything stored stays in
UTC.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from clinicops.config import settings
from clinicops.models.appointment import Appointment
from clinicops.models.reminder_models import ReminderChannel, ReminderKind

EMAIL_SUBJECTS = {
    ReminderKind.FIRST.value: "Reminder: Your appointment is tomorrow",
    ReminderKind.SECOND.value: "Reminder: Your appointment is in 2 hours",
    ReminderKind.MANUAL.value: "Important: Appointment reminder",
    ReminderKind.CUSTOM.value: "Appointment reminder",
}

PUSH_TITLES = {
    ReminderKind.FIRST.value: "Appointment Tomorrow",
    ReminderKind.SECOND.value: "Appointment in 2 Hours",
}

TEST_MESSAGE = "This is a test notification from the reminder system."


@dataclass
class Attachment:
    filename: str
    content_type: str
    data: bytes


@dataclass
class RenderedReminder:
    channel: ReminderChannel
    title: str
    text: str
    html: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    attachments: List[Attachment] = field(default_factory=list)

    def summary(self) -> Dict[str, Any]:
        return {"title": self.title, "text": self.text[:500]}


def _zone(name: Optional[str]):
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def to_local(value: datetime, tz_name: Optional[str]) -> datetime:
    return value.replace(tzinfo=timezone.utc).astimezone(_zone(tz_name))


class ReminderRenderer:
    def render(
        self,
        channel: ReminderChannel,
        kind: str,
        appointment: Appointment,
        recipient_name: str,
        doctor_name: str,
        tz_name: str = "UTC",
        custom_message: Optional[str] = None,
        tracking_token: Optional[str] = None,
    ) -> RenderedReminder:
        channel = ReminderChannel(channel)
        local_start = to_local(appointment.start_time, tz_name)
        date_text = local_start.strftime("%A, %B %d, %Y")
        time_text = local_start.strftime("%I:%M %p").lstrip("0")
        short_text = self._short_message(kind, local_start, time_text, custom_message)
        title = PUSH_TITLES.get(kind, "Appointment Reminder")

        if channel == ReminderChannel.EMAIL:
            return self._email(kind, appointment, recipient_name, doctor_name, date_text, time_text,
                               custom_message, tracking_token)

        if channel == ReminderChannel.SMS:
            if custom_message:
                text = f"{custom_message} Reply STOP to opt out."
            elif kind == ReminderKind.FIRST.value:
                text = (f"Hi {recipient_name}! {settings.CLINIC_NAME} reminder: you have an appointment "
                        f"tomorrow ({local_start.strftime('%b %d')}) at {time_text}. Reply STOP to opt out.")
            elif kind == ReminderKind.SECOND.value:
                text = (f"Hi {recipient_name}! {settings.CLINIC_NAME}: your appointment is in 2 hours "
                        f"({time_text}). See you soon! Reply STOP to opt out.")
            else:
                text = (f"Hi {recipient_name}! {settings.CLINIC_NAME} appointment reminder: "
                        f"{local_start.strftime('%b %d')} at {time_text}. Reply STOP to opt out.")
            return RenderedReminder(channel=channel, title=title, text=text)

        data = {
            "type": "appointment_reminder",
            "appointment_id": appointment.id,
            "reminder_type": kind,
            "appointment_date": appointment.start_time.isoformat(),
            "action": "view_appointment",
        }
        if channel == ReminderChannel.PUSH:
            return RenderedReminder(channel=channel, title=title, text=short_text, data=data)

        data.update({
            "title": title,
            "message": short_text,
            "action_url": f"{settings.APP_URL}/appointments/{appointment.id}",
            "priority": "high" if kind in (ReminderKind.SECOND.value, ReminderKind.MANUAL.value) else "normal",
        })
        return RenderedReminder(channel=channel, title=title, text=short_text, data=data)

    def _short_message(self, kind: str, local_start: datetime, time_text: str,
                       custom_message: Optional[str]) -> str:
        if custom_message:
            return custom_message
        if kind == ReminderKind.FIRST.value:
            return f"Your appointment is tomorrow at {time_text}"
        if kind == ReminderKind.SECOND.value:
            return f"Your appointment is at {time_text} (in 2 hours)"
        return f"Appointment: {local_start.strftime('%b %d')} at {time_text}"

    def _email(self, kind, appointment, recipient_name, doctor_name, date_text, time_text,
               custom_message, tracking_token) -> RenderedReminder:
        subject = EMAIL_SUBJECTS.get(kind, "Appointment reminder")
        base = f"{settings.APP_URL}/appointments/{appointment.id}"
        cancel_link = f"{base}/cancel"
        reschedule_link = f"{base}/reschedule"
        pixel = (
            f'<img src="{settings.APP_URL}/api/v1/reminders/track/{tracking_token}/open" width="1" height="1" alt="">'
            if tracking_token else ""
        )
        note = f"<p>{custom_message}</p>" if custom_message else ""

        html = f"""
        <html>
        <body>
            <h2>Appointment Reminder</h2>
            <p>Hello {recipient_name},</p>
            <p>This is a friendly reminder about your upcoming appointment:</p>
            {note}
            <ul>
                <li><strong>Date:</strong> {date_text}</li>
                <li><strong>Time:</strong> {time_text}</li>
                <li><strong>Doctor:</strong> {doctor_name}</li>
                <li><strong>Duration:</strong> {appointment.duration_minutes} minutes</li>
            </ul>
            <p>Please arrive 10 minutes early.</p>
            <p><a href="{reschedule_link}">Reschedule</a> | <a href="{cancel_link}">Cancel</a></p>
            <p>{settings.CLINIC_NAME}</p>
            {pixel}
        </body>
        </html>
        """

        lines = [
            f"Hello {recipient_name},",
            "",
            "This is a friendly reminder about your upcoming appointment:",
        ]
        if custom_message:
            lines.append(custom_message)
        lines.extend([
            f"Date: {date_text}",
            f"Time: {time_text}",
            f"Doctor: {doctor_name}",
            "",
            f"Reschedule: {reschedule_link}",
            f"Cancel: {cancel_link}",
        ])

        return RenderedReminder(
            channel=ReminderChannel.EMAIL,
            title=subject,
            text="\n".join(lines),
            html=html,
            attachments=[self.ical_attachment(appointment)],
        )

    @staticmethod
    def ical_attachment(appointment: Appointment) -> Attachment:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        lines = [
            "BEGIN:VCALENDAR",
            "VERSION:2.0",
            f"PRODID:-//{settings.CLINIC_NAME}//Appointment Reminder//EN",
            "BEGIN:VEVENT",
            f"UID:appointment-{appointment.id}@clinicops",
            f"DTSTAMP:{stamp}",
            f"DTSTART:{appointment.start_time.strftime('%Y%m%dT%H%M%SZ')}",
            f"DTEND:{appointment.end_time.strftime('%Y%m%dT%H%M%SZ')}",
            "SUMMARY:Medical Appointment",
            "DESCRIPTION:Your scheduled appointment",
            "END:VEVENT",
            "END:VCALENDAR",
        ]
        return Attachment(
            filename=f"appointment_{appointment.id}.ics",
            content_type="text/calendar",
            data=("\r\n".join(lines) + "\r\n").encode("utf-8"),
        )
