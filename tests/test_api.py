import pytest

import consolidator_api


@pytest.fixture
def client(tmp_path, monkeypatch, fake_browser):
    monkeypatch.setattr(consolidator_api, "BASE_OUTPUT_DIR", str(tmp_path / "out"))
    consolidator_api.app.config["TESTING"] = True
    return consolidator_api.app.test_client()


def test_consolidate_directory(client, docs_tree, tmp_path):
    response = client.post("/consolidate", json={"source": str(docs_tree), "fileName": "My Docs"})

    assert response.status_code == 200
    data = response.get_json()
    assert data["fileName"].startswith("My_Docs_")
    assert data["fileName"].endswith(".pdf")
    assert (tmp_path / "out" / data["fileName"]).exists()
    assert data["fileSize"].endswith(" bytes")
    assert data["summary"].startswith("Consolidated 3 of 3 units")
    assert data["warnings"] == ["Missing image 'images/missing.png' referenced in b/d.mdx"]
    assert data["failedUnits"] == []


def test_missing_source_is_rejected(client):
    response = client.post("/consolidate", json={"fileName": "x"})
    assert response.status_code == 400
    assert response.get_json() == {"error": "Missing source"}


def test_consolidation_error_is_reported(client, tmp_path):
    response = client.post("/consolidate", json={"source": str(tmp_path / "nowhere")})
    assert response.status_code == 422
    assert "does not exist" in response.get_json()["error"]
