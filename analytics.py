import math
import io
import base64
import logging
from datetime import datetime

# Matplotlib configuration for server-side rendering (no GUI)
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import matplotlib.dates as mdates

logger = logging.getLogger(__name__)

# late counts as attended; excused meetings are left out of the rate
ATTENDED_STATUSES = ('present', 'late')


def calculate_attendance_status(attended_count, total_meetings, target_percent=75.0, critical_percent=60.0):
    """
    Attendance status of one participant.

    Args:
        attended_count (int): Meetings attended (present or late).
        total_meetings (int): Meetings counted for the participant (excused excluded).
        target_percent (float): Expected attendance rate.
        critical_percent (float): Rate under which the participant is flagged critical.

    Returns:
        dict with current_percent, status ('Good', 'Warning', 'Critical'), color,
        needed_to_recover (consecutive meetings needed to reach the target) and message.
    """
    if total_meetings == 0:
        return {
            "current_percent": 0.0,
            "status": "Good",
            "color": "green",
            "needed_to_recover": 0,
            "message": "No meetings recorded yet."
        }

    current_percent = (attended_count / total_meetings) * 100

    if current_percent < critical_percent:
        status, color = "Critical", "red"
        message = f"Attendance is below {critical_percent}%."
    elif current_percent < target_percent:
        status, color = "Warning", "yellow"
        message = f"Attendance is below {target_percent}%."
    else:
        status, color = "Good", "green"
        message = f"Attendance is above {target_percent}%."

    # (attended + x) / (total + x) >= target  =>  x >= (target * total - attended) / (1 - target)
    target_rate = target_percent / 100.0
    needed_to_recover = 0
    if current_percent < target_percent:
        denominator = 1.0 - target_rate
        if denominator > 0:
            needed_to_recover = math.ceil(((total_meetings * target_rate) - attended_count) / denominator)
        else:
            needed_to_recover = 999

    return {
        "current_percent": round(current_percent, 1),
        "status": status,
        "color": color,
        "needed_to_recover": needed_to_recover,
        "message": message
    }


def summarize_participants(rows, target_percent=75.0, critical_percent=60.0):
    """
    rows: attendance rows with participant_id, first_name, last_name, status.
    Returns one summary dict per participant, lowest rate first.
    """
    by_participant = {}
    for row in rows:
        entry = by_participant.setdefault(row['participant_id'], {
            'participant_id': row['participant_id'],
            'name': f"{row['first_name']} {row['last_name']}",
            'attended': 0,
            'total': 0,
            'excused': 0,
        })
        if row['status'] == 'excused':
            entry['excused'] += 1
            continue
        entry['total'] += 1
        if row['status'] in ATTENDED_STATUSES:
            entry['attended'] += 1

    summaries = []
    for entry in by_participant.values():
        entry.update(calculate_attendance_status(entry['attended'], entry['total'], target_percent, critical_percent))
        summaries.append(entry)

    summaries.sort(key=lambda x: (x['current_percent'], x['name']))
    return summaries


def get_at_risk_participants(summaries, threshold=75.0):
    return [s for s in summaries if s['total'] > 0 and s['current_percent'] < threshold]


def daily_rates(rows):
    """
    Per-date attendance rate from attendance rows.
    Returns a list of {'date', 'attended', 'total'} sorted by date.
    """
    days = {}
    for row in rows:
        if row['status'] == 'excused':
            continue
        day = days.setdefault(row['date'], {'date': row['date'], 'attended': 0, 'total': 0})
        day['total'] += 1
        if row['status'] in ATTENDED_STATUSES:
            day['attended'] += 1
    return [days[d] for d in sorted(days)]


def generate_attendance_trend_graph(days_data, target_percent=75.0):
    """
    Generates a base64-encoded PNG line graph of meeting attendance over time.

    Args:
        days_data: List of dicts with 'date', 'attended', 'total' keys

    Returns:
        str: PNG data URI, or None when there are fewer than two meetings
    """
    if not days_data or len(days_data) < 2:
        return None

    dates = []
    percentages = []
    for day in days_data:
        try:
            dates.append(datetime.strptime(str(day['date'])[:10], '%Y-%m-%d'))
        except ValueError:
            continue
        total = day.get('total', 0)
        percentages.append((day.get('attended', 0) / total * 100) if total > 0 else 0)

    if len(dates) < 2:
        return None

    fig, ax = plt.subplots(figsize=(10, 4), dpi=100)
    try:
        fig.patch.set_facecolor('#1a1d23')
        ax.set_facecolor('#252930')

        ax.plot(dates, percentages,
                color='#4da3ff',
                linewidth=2.5,
                marker='o',
                markersize=6,
                markerfacecolor='#4da3ff',
                markeredgecolor='white',
                markeredgewidth=1)
        ax.fill_between(dates, percentages, alpha=0.2, color='#4da3ff')
        ax.axhline(y=target_percent, color='#28a745', linestyle='--', linewidth=1.5, alpha=0.7,
                   label=f'{target_percent:.0f}% Target')

        ax.set_ylabel('Attendance %', color='#e9ecef', fontsize=11)
        ax.set_xlabel('Meeting Date', color='#e9ecef', fontsize=11)
        ax.tick_params(colors='#adb5bd', labelsize=9)
        ax.xaxis.set_major_formatter(mdates.DateFormatter('%d %b'))
        ax.xaxis.set_major_locator(mdates.AutoDateLocator())
        fig.autofmt_xdate(rotation=45)
        ax.set_ylim(0, 105)

        ax.grid(True, alpha=0.2, color='#6c757d')
        ax.spines['top'].set_visible(False)
        ax.spines['right'].set_visible(False)
        ax.spines['left'].set_color('#3d4450')
        ax.spines['bottom'].set_color('#3d4450')
        ax.legend(loc='lower right', facecolor='#252930', edgecolor='#3d4450', labelcolor='#e9ecef')

        plt.tight_layout()

        buffer = io.BytesIO()
        plt.savefig(buffer, format='png', facecolor=fig.get_facecolor(), edgecolor='none')
        buffer.seek(0)
        image_base64 = base64.b64encode(buffer.read()).decode('utf-8')
    finally:
        plt.close(fig)

    return f"data:image/png;base64,{image_base64}"
