"""
CSV import for student rosters and question banks.

Students:  Name,Email[,StudentId]
Questions: Question,OptionA,OptionB[,OptionC,OptionD],CorrectLetter
Rows are validated as a whole batch; nothing is written if any row fails.
"""
import csv
import io
import logging
import re
from typing import Dict, List

from errors import InvalidInput
from models import Question, Student

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')
SID_RE = re.compile(r'^SID-(\d+)$')
OPTION_COLUMNS = ('OptionA', 'OptionB', 'OptionC', 'OptionD')
LETTERS = 'ABCD'


def decode_upload(raw: bytes) -> str:
    try:
        return raw.decode('utf-8-sig')
    except UnicodeDecodeError:
        raise InvalidInput('CSV must be UTF-8 encoded', 'InvalidCsv')


def parse_rows(content: str) -> List[Dict[str, str]]:
    """Header row -> list of dicts with stripped keys/values; blank rows skipped."""
    if not content or not content.strip():
        raise InvalidInput('CSV is empty', 'EmptyCsv')
    content = content.lstrip('\ufeff')
    try:
        reader = csv.DictReader(io.StringIO(content))
        rows = []
        for raw in reader:
            row = {
                (key or '').strip(): (value or '').strip() if isinstance(value, str) else ''
                for key, value in raw.items()
                if key is not None
            }
            if any(row.values()):
                rows.append(row)
    except csv.Error:
        raise InvalidInput('CSV parse error. Check headers and commas.', 'InvalidCsv')
    return rows


def next_external_ids(existing_ids, taken, count: int) -> List[str]:
    """Generate `count` SID-NNNN ids above the highest existing one, skipping any taken."""
    highest = 0
    for external_id in existing_ids:
        match = SID_RE.match(external_id or '')
        if match:
            highest = max(highest, int(match.group(1)))
    generated = []
    blocked = set(existing_ids) | set(taken)
    while len(generated) < count:
        highest += 1
        candidate = f'SID-{highest:04d}'
        if candidate in blocked:
            continue
        generated.append(candidate)
    return generated


def import_students(session, quiz, content: str) -> List[Student]:
    rows = parse_rows(content)
    if not rows:
        raise InvalidInput('No students found in CSV', 'NoStudents')

    emails, external_ids, duplicates, parsed = set(), set(), [], []
    for row in rows:
        name = row.get('Name') or row.get('name')
        email = row.get('Email') or row.get('email')
        external_id = row.get('StudentId') or row.get('studentId') or None
        if not name or not email:
            raise InvalidInput('Each student needs Name and Email', 'InvalidRow')
        if not EMAIL_RE.match(email):
            raise InvalidInput(f'Invalid email: {email}', 'InvalidEmail')
        email = email.lower()
        if email in emails:
            duplicates.append(email)
        emails.add(email)
        if external_id:
            if external_id in external_ids:
                duplicates.append(external_id)
            external_ids.add(external_id)
        parsed.append({'name': name, 'email': email, 'external_id': external_id})
    if duplicates:
        raise InvalidInput(f"Duplicate entries in upload: {', '.join(duplicates)}", 'DuplicateRows')

    existing = session.query(Student).filter_by(quiz_id=quiz.id).all()
    existing_ids = {s.external_id for s in existing if s.external_id}
    clashes = sorted(external_ids & existing_ids)
    if clashes:
        raise InvalidInput(f"Student ID already exists: {', '.join(clashes)}", 'DuplicateStudentId')
    taken_emails = sorted(emails & {s.email for s in existing})
    if taken_emails:
        raise InvalidInput(f"Emails already exist: {', '.join(taken_emails)}", 'DuplicateEmail')

    missing = [p for p in parsed if not p['external_id']]
    for item, generated in zip(missing, next_external_ids(existing_ids, external_ids, len(missing))):
        item['external_id'] = generated

    students = [Student(quiz_id=quiz.id, **item) for item in parsed]
    session.add_all(students)
    session.commit()
    logger.info('Imported %s student(s) into quiz=%s', len(students), quiz.id)
    return students


def import_questions(session, quiz, content: str) -> List[Question]:
    rows = parse_rows(content)
    if not rows:
        raise InvalidInput('No questions found in CSV', 'NoQuestions')

    last_order = (
        session.query(Question.order_index)
        .filter_by(quiz_id=quiz.id)
        .order_by(Question.order_index.desc())
        .limit(1)
        .scalar()
    ) or 0

    questions = []
    for idx, row in enumerate(rows, start=1):
        text = row.get('Question') or row.get('question') or ''
        options = [row.get(col) for col in OPTION_COLUMNS if row.get(col)]
        if not text or len(options) < 2:
            raise InvalidInput(
                f'Invalid row {idx}. Each question needs text and at least 2 options. '
                'If your question contains commas, wrap the question in double quotes.',
                'InvalidRow',
            )
        letter = (row.get('CorrectLetter') or 'A').upper()
        correct_index = LETTERS.find(letter) if len(letter) == 1 else -1
        if correct_index < 0 or correct_index >= len(options):
            correct_index = 0
        questions.append(Question(
            quiz_id=quiz.id,
            text=text,
            options=options,
            correct_index=correct_index,
            order_index=last_order + idx,
        ))

    session.add_all(questions)
    session.commit()
    logger.info('Imported %s question(s) into quiz=%s', len(questions), quiz.id)
    return questions
