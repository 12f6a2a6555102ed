import csv
from io import BytesIO, StringIO

from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.pdfgen import canvas

from models import Attempt, AttemptStatus, Question, isoformat

CSV_HEADER = ['studentName', 'studentEmail', 'status', 'correctCount', 'totalQuestions', 'submittedAt']


def export_csv(session, quiz) -> str:
    attempts = (
        session.query(Attempt)
        .filter_by(quiz_id=quiz.id)
        .order_by(Attempt.started_at.asc(), Attempt.id.asc())
        .all()
    )
    buf = StringIO()
    writer = csv.writer(buf, lineterminator='\n')
    writer.writerow(CSV_HEADER)
    for a in attempts:
        writer.writerow([
            a.student_name,
            a.student_email,
            AttemptStatus(a.status).value,
            a.correct_count or 0,
            a.total_questions or 0,
            isoformat(a.submitted_at) or '',
        ])
    return buf.getvalue()


def _fit(text, limit=95):
    text = str(text or '')
    return text if len(text) <= limit else text[: limit - 3] + '...'


def attempt_report_pdf(session, quiz, attempt) -> bytes:
    """One-page-per-screenful A4 report: header, score, per-question breakdown."""
    questions = {str(q.id): q for q in session.query(Question).filter_by(quiz_id=attempt.quiz_id).all()}

    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=A4)
    width, height = A4

    y = height - 18 * mm
    c.setFont('Helvetica-Bold', 14)
    c.drawString(18 * mm, y, 'Quiz Attempt Report')
    y -= 10 * mm

    c.setFont('Helvetica', 10)
    c.drawString(18 * mm, y, f'Student Name: {attempt.student_name}')
    y -= 6 * mm
    c.drawString(18 * mm, y, f'Student Email: {attempt.student_email}')
    y -= 6 * mm
    c.drawString(18 * mm, y, f'Quiz: {_fit(quiz.title)}')
    y -= 6 * mm
    date_val = attempt.submitted_at or attempt.started_at
    c.drawString(18 * mm, y, f"Date: {date_val.strftime('%Y-%m-%d %H:%M') if date_val else ''}")
    y -= 6 * mm
    c.drawString(18 * mm, y, f'Status: {AttemptStatus(attempt.status).value}')
    y -= 8 * mm

    total = int(attempt.total_questions or 0)
    correct = int(attempt.correct_count or 0)
    percent = (correct * 100.0 / total) if total else 0.0
    c.drawString(18 * mm, y, f'Score: {correct} / {total} ({percent:.2f}%)')
    y -= 6 * mm
    c.drawString(18 * mm, y, f'Suspicious Events: {attempt.suspicious_events_count or 0}')
    y -= 6 * mm
    if attempt.forced_end_reason:
        c.drawString(18 * mm, y, f'Forced End Reason: {_fit(attempt.forced_end_reason)}')
        y -= 6 * mm
    y -= 4 * mm

    c.setFont('Helvetica-Bold', 11)
    c.drawString(18 * mm, y, 'Question-wise Breakdown')
    y -= 8 * mm

    for idx, detail in enumerate(attempt.score_details or [], start=1):
        q = questions.get(str(detail.get('questionId')))
        options = list(q.options or []) if q else []

        if y < 25 * mm:
            c.showPage()
            y = height - 18 * mm

        c.setFont('Helvetica-Bold', 10)
        c.drawString(18 * mm, y, _fit(f"Q{idx}. {q.text if q else 'Unknown question'}"))
        y -= 6 * mm

        correct_text = options[q.correct_index] if q and 0 <= q.correct_index < len(options) else ''
        selected = detail.get('selectedIndex')
        selected_text = options[selected] if isinstance(selected, int) and 0 <= selected < len(options) else ''

        c.setFont('Helvetica', 9)
        c.drawString(20 * mm, y, _fit(f'Correct Answer: {correct_text}'))
        y -= 5 * mm
        c.drawString(20 * mm, y, _fit(f'Selected Answer: {selected_text}'))
        y -= 5 * mm
        c.drawString(20 * mm, y, f"Result: {'Correct' if detail.get('isCorrect') else 'Incorrect'}")
        y -= 7 * mm

    c.showPage()
    c.save()

    pdf = buf.getvalue()
    buf.close()
    return pdf
