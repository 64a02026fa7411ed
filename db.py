"""Supabase client. Cached via Streamlit for the UI shell, uncached for CLIs and workers."""
import os

import streamlit as st
from dotenv import load_dotenv
from supabase import create_client, Client

load_dotenv()


def _env_client() -> Client:
    url = os.environ.get("SUPABASE_URL")
    key = os.environ.get("SUPABASE_KEY")
    if not url or not key:
        raise ValueError("SUPABASE_URL and SUPABASE_KEY must be set")
    return create_client(url, key)


@st.cache_resource
def get_supabase() -> Client:
    return _env_client()


def get_supabase_uncached() -> Client:
    """For CLI/scripts and background write threads (no Streamlit context)."""
    return _env_client()
