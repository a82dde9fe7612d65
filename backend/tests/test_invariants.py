import pytest
from sqlalchemy import select

from app.db.session import SessionLocal
from app.models.book import TopicBook
from app.services.books import BookRecorder, book_to_dict, check_storage_fields

from conftest import pdf_file


def test_release_records_need_asset_and_tag():
    with pytest.raises(ValueError):
        check_storage_fields({"storage_type": "github_release", "github_release_tag": "pdf-storage-v1"})
    with pytest.raises(ValueError):
        check_storage_fields({"storage_type": "github_release", "github_asset_id": 5})
    check_storage_fields({"storage_type": "github_release", "github_asset_id": 5, "github_release_tag": "t"})


def test_bucket_records_cannot_carry_asset_id():
    with pytest.raises(ValueError):
        check_storage_fields({"storage_type": "supabase_storage", "github_asset_id": 5})
    check_storage_fields({"storage_type": "supabase_storage", "storage_object_key": "books/pdfs/a.pdf"})
    check_storage_fields({"storage_type": None})


def test_recorder_refuses_inconsistent_update(client, fakes, admin_headers, topic):
    r = client.post(
        "/github-releases/upload-pdf",
        headers=admin_headers,
        data={"topic_id": str(topic.id), "title": "Consistent"},
        files={"pdf": pdf_file()},
    )
    book_id = r.json()["book"]["id"]

    with SessionLocal() as db:
        recorder = BookRecorder(db)
        book = recorder.get(book_id)
        with pytest.raises(ValueError):
            recorder.update(book, {"github_asset_id": None})


def test_every_uploaded_record_points_at_one_backend(client, fakes, admin_headers, topic, theme):
    for i, data in enumerate(({"topic_id": str(topic.id)}, {"theme_id": str(theme.id)})):
        r = client.post(
            "/github-releases/upload-pdf",
            headers=admin_headers,
            data={**data, "title": f"Book {i}"},
            files={"pdf": pdf_file()},
        )
        assert r.status_code == 200, r.text

    with SessionLocal() as db:
        rows = db.scalars(select(TopicBook)).all()
        assert len(rows) == 2
        for row in rows:
            out = book_to_dict(row)
            assert out["storage_type"] == "github_release"
            assert out["github_asset_id"] and out["github_release_tag"]
            assert out["storage_object_key"] is None
            assert out["pdf_url"]
