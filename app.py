"""Exam runner: Streamlit shell over ExamSession (unit exams and sectioned TOEFL exams)."""
import logging
import sys
from pathlib import Path

# Ensure project root is in path
project_root = Path(__file__).resolve().parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

import streamlit as st

from db import get_supabase
from engine import EXAM_TYPE_TOEFL, FINAL_SCORE_MAX, UNIT_SCORE_MAX
from examengine.database import ExamDatabase
from examengine.errors import ConfigurationError, ExamAlreadyCompleted
from examengine.scoring import format_score_display, format_score_report
from examengine.session import ExamSession, SessionPhase
from examengine.timer import format_time

logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

st.set_page_config(page_title="Exam Runner", layout="wide")
st.sidebar.title("Exam Runner")

student_id = st.query_params.get("student") or st.sidebar.text_input("Student ID", key="student_id")
exam_id = st.query_params.get("exam") or st.sidebar.text_input("Exam ID", key="exam_id")

session: ExamSession = st.session_state.get("exam_session")


def _reset():
    old = st.session_state.pop("exam_session", None)
    if old is not None:
        old.dispose()


# ----- Start -----
if session is None:
    st.header("Start exam")
    if not student_id or not exam_id:
        st.info("Enter your student ID and the exam ID to begin.")
        st.stop()
    if st.button("Start exam", type="primary"):
        session = ExamSession(student_id, store=ExamDatabase(get_supabase()))
        try:
            session.start(exam_id)
        except ExamAlreadyCompleted as e:
            st.warning(str(e))
            session.dispose()
            st.stop()
        except ConfigurationError as e:
            st.error(str(e))
            session.dispose()
            st.stop()
        st.session_state["exam_session"] = session
        st.rerun()
    st.stop()

exam = session.exam
st.header(exam.title)


@st.fragment(run_every=1)
def clock():
    """Sidebar clock; reruns the page when the section ends underneath it."""
    remaining = session.remaining_seconds
    if remaining is not None:
        st.metric("Time left", format_time(remaining))
        if session.time_warning:
            st.warning("Less than 5 minutes remaining!")
    if session.state is not st.session_state.get("last_phase"):
        st.session_state["last_phase"] = session.state
        st.rerun()


with st.sidebar:
    clock()
    done = len(session.completed_section_ids)
    st.progress(done / len(exam.sections) if exam.sections else 0)
    st.caption(f"{done}/{len(exam.sections)} sections completed")


# ----- Exit confirmation -----
if session.state is SessionPhase.EXIT_REQUESTED:
    st.warning("Exit the exam? Completed sections and saved answers are kept; remaining sections stay unfinished.")
    col1, col2 = st.columns(2)
    with col1:
        if st.button("Exit exam", type="primary"):
            session.confirm_exit()
            st.rerun()
    with col2:
        if st.button("Keep going"):
            session.cancel_exit()
            st.rerun()
    st.stop()

# ----- Results -----
if session.state is SessionPhase.EXAM_COMPLETE:
    if session.exited:
        st.info("You left the exam. Your progress has been saved.")
    else:
        record = session.result_record
        if session.exam_type == EXAM_TYPE_TOEFL and session.composite is not None:
            st.metric("TOEFL score", f"{session.composite.final_score} / {FINAL_SCORE_MAX}")
            for col, (kind, score) in zip(st.columns(3), session.composite.per_section.items()):
                with col:
                    st.metric(kind.capitalize(), format_score_display(score.raw, score.converted))
            with st.expander("Score breakdown"):
                st.code(format_score_report(session.composite))
        elif record is not None:
            st.metric("Score", f"{record.total_score} / {UNIT_SCORE_MAX}")
            st.caption(f"{record.total_points} correct")
        if session.save_status == "saved":
            st.success("Your result has been saved.")
        elif session.save_status == "pending":
            st.warning("Your result is pending save. It has been kept and will be submitted again.")
        else:
            st.info("Saving your result...")
    if st.button("Back to start"):
        _reset()
        st.rerun()
    st.stop()

# ----- Section selection -----
if session.state is SessionPhase.SECTION_SELECTION:
    st.subheader("Choose a section")
    for section in exam.sections:
        completed = section.id in session.completed_section_ids
        label = f"{section.title} ({len(section.questions)} questions)"
        if st.button(f"✓ {label}" if completed else label, key=f"section_{section.id}", disabled=completed):
            session.select_section(section.id)
            st.rerun()
    if st.button("Exit exam"):
        session.request_exit()
        st.rerun()
    st.stop()

# ----- Active section -----
section = session.current_section
if section is None:
    st.rerun()
st.subheader(section.title)
if section.audio_url:
    st.audio(section.audio_url)

shown_passage = None
for n, q in enumerate(section.questions, 1):
    if q.passage_content and q.passage_title != shown_passage:
        shown_passage = q.passage_title
        with st.expander(q.passage_title or "Passage", expanded=True):
            st.write(q.passage_content)
    if q.audio_url:
        st.audio(q.audio_url)
    current = session.answers.get(q.id)
    if q.choices:
        options = list(q.choices)
        choice = st.radio(
            f"{n}. {q.prompt}",
            options,
            index=options.index(current) if current in options else None,
            key=f"q_{q.id}",
        )
    else:
        choice = st.text_input(f"{n}. {q.prompt}", value=current or "", key=f"q_{q.id}")
    if choice is not None and choice != current and (choice or current):
        session.record_answer(q.id, choice)

col1, col2 = st.columns([1, 3])
with col1:
    if st.button("Submit section", type="primary"):
        session.submit_section()
        st.rerun()
with col2:
    if st.button("Exit exam"):
        session.request_exit()
        st.rerun()
