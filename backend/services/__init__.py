"""Services for the Inspiration Chat backend."""
from .upstream_client import (
    UpstreamClient,
    UpstreamResponse,
    UpstreamErrorInfo,
    UpstreamError,
    UpstreamRequestError,
    UpstreamParseError,
    StreamTransportError,
)
from .inspiration_analyzer import InspirationAnalyzer
from .stream_relay import StreamRelay, StreamSession, SSELineDecoder
from .supabase_store import SupabaseStore
from .inspiration_service import InspirationService
from .inspiration_export import export_inspirations

__all__ = ['UpstreamClient', 'UpstreamResponse', 'UpstreamErrorInfo', 'UpstreamError', 'UpstreamRequestError', 'UpstreamParseError', 'StreamTransportError', 'InspirationAnalyzer', 'StreamRelay', 'StreamSession', 'SSELineDecoder', 'SupabaseStore', 'InspirationService', 'export_inspirations']
