from sqlalchemy import create_engine, MetaData
from sqlalchemy.engine import make_url
from sqlalchemy.ext.automap import automap_base
from sqlalchemy.orm import sessionmaker

FILE_DATA_TABLE = "file_data"


def init_db(db_url: str):
    engine_kwargs = {"pool_pre_ping": True}
    if make_url(db_url).get_backend_name() == "postgresql":
        engine_kwargs.update(
            pool_size=10,
            max_overflow=5,
            connect_args={"application_name": "bulk_issuance"},
        )
    engine = create_engine(db_url, **engine_kwargs)

    metadata = MetaData()
    metadata.reflect(bind=engine, only=[FILE_DATA_TABLE])

    Base = automap_base(metadata=metadata)
    Base.prepare()

    Session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    return {
        "engine": engine,
        "Session": Session,
        "FileData": getattr(Base.classes, FILE_DATA_TABLE),
    }
