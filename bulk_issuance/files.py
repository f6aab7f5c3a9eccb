import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional, Union

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class ReportFileLookupError(Exception):
    """Raised when a report file cannot be resolved for a user"""


class ReportFileNotFound(ReportFileLookupError):
    """No file with this ID is owned by the requesting user"""

    def __init__(self, file_id: int, user_id: int):
        super().__init__(f"record not found for file {file_id} and user {user_id}")
        self.file_id = file_id
        self.user_id = user_id


class ReportFile:
    """A stored bulk-issuance report: header line plus JSON-encoded rows"""

    def __init__(
        self,
        file_id: int,
        user_id: int,
        filename: str,
        headers: str,
        row_data: Optional[Union[bytes, str]] = None,
    ):
        self.id = file_id
        self.user_id = user_id
        self.filename = filename
        self.headers = headers or ""
        self.row_data = row_data

    def __repr__(self):
        return f"ReportFile(id={self.id!r}, user_id={self.user_id!r}, filename={self.filename!r})"


class FileStore(ABC):
    """Lookup of stored report files, scoped to their owner"""

    @abstractmethod
    def get_file_by_id_and_user(self, file_id: int, user_id: int) -> ReportFile:
        """
        Fetch a report file owned by a user

        Args:
            file_id: Report file identifier
            user_id: Identifier of the requesting user

        Returns:
            ReportFile: the stored file

        Raises:
            ReportFileNotFound: the file does not exist or belongs to another user
            ReportFileLookupError: the storage backend failed
        """
        pass


class InMemoryFileStore(FileStore):
    """Dictionary-backed store (for local runs and tests)"""

    def __init__(self, files=None):
        self.files: Dict[int, ReportFile] = {}
        for report_file in files or []:
            self.add(report_file)

    def add(self, report_file: ReportFile):
        self.files[report_file.id] = report_file
        return report_file

    def get_file_by_id_and_user(self, file_id: int, user_id: int) -> ReportFile:
        report_file = self.files.get(file_id)
        if report_file is None or report_file.user_id != user_id:
            raise ReportFileNotFound(file_id, user_id)
        return report_file


class SqlFileStore(FileStore):
    """Store backed by the reflected ``file_data`` table"""

    def __init__(self, db: dict):
        self.Session = db["Session"]
        self.FileData = db["FileData"]

    def get_file_by_id_and_user(self, file_id: int, user_id: int) -> ReportFile:
        FileData = self.FileData
        try:
            with self.Session() as s:
                row = s.execute(
                    select(FileData).where(
                        FileData.id == file_id, FileData.user_id == user_id
                    )
                ).scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(
                f"Error fetching file {file_id } for user {user_id }: {str (e )}",
                exc_info=True,
            )
            raise ReportFileLookupError(str(e)) from e

        if row is None:
            raise ReportFileNotFound(file_id, user_id)

        return ReportFile(
            file_id=row.id,
            user_id=row.user_id,
            filename=row.filename,
            headers=row.headers,
            row_data=row.row_data,
        )
