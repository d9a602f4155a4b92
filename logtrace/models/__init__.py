from logtrace.models.log_file import LogFile, LogFileStatus
from logtrace.models.log_event import LogEvent, PARSER_ERROR_EVENT
from logtrace.models.device_session import DeviceSession, SessionStatus
from logtrace.models.known_issue import KnownIssue, IssueCategory
from logtrace.models.analysis_snapshot import AnalysisSnapshot
from logtrace.models.analysis_report import AnalysisReport, ReportType

__all__ = [
    "LogFile",
    "LogFileStatus",
    "LogEvent",
    "PARSER_ERROR_EVENT",
    "DeviceSession",
    "SessionStatus",
    "KnownIssue",
    "IssueCategory",
    "AnalysisSnapshot",
    "AnalysisReport",
    "ReportType",
]
