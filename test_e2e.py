#!/usr/bin/env python3
"""
End-to-end test script for the packaging service.
Tests: upload, job submission, status polling, logs, results, download, retry.
Requires: backend running on http://localhost:8080 with appimagetool on PATH
(or PACKAGER_APPIMAGETOOL_CMD pointing at a stand-in).
"""
import io
import sys
import time
import zipfile

import requests

BASE_URL = "http://localhost:8080"
TIMEOUT = 120  # seconds to wait for job completion
PLATFORMS = ["pwa", "linux"]


def make_build() -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr("dist/index.html", "<!doctype html><html><head><title>E2E</title></head><body>e2e</body></html>")
        zf.writestr("dist/app.js", "console.log('e2e');")
        zf.writestr("dist/e2e-app", "#!/bin/sh\necho e2e\n")
    return buf.getvalue()


def test_e2e():
    try:
        requests.get(f"{BASE_URL}/health", timeout=2)
    except requests.ConnectionError:
        import pytest
        pytest.skip(f"no packaging service at {BASE_URL}")
    assert run()


def run():
    print("[1] Uploading build archive...")
    resp = requests.post(f"{BASE_URL}/upload", files={"file": ("e2e-build.zip", make_build(), "application/zip")})
    if resp.status_code != 200:
        print(f"ERROR: Upload failed with {resp.status_code}: {resp.text}")
        return False
    session_id = resp.json()["session_id"]
    print(f"✓ Upload successful. session_id: {session_id}")

    print("[2] Submitting job...")
    resp = requests.post(f"{BASE_URL}/jobs", json={
        "session_id": session_id,
        "platforms": PLATFORMS,
        "options": {"app_name": "E2E App", "app_version": "1.0.0", "executable": "e2e-app"},
    })
    if resp.status_code != 202:
        print(f"ERROR: Submit failed with {resp.status_code}: {resp.text}")
        return False
    job_id = resp.json()["job_id"]
    print(f"✓ Job queued. job_id: {job_id}")

    print("[3] Polling status...")
    status = None
    start = time.time()
    while time.time() - start < TIMEOUT:
        resp = requests.get(f"{BASE_URL}/status/{job_id}")
        if resp.status_code != 200:
            print(f"ERROR: Status check failed: {resp.text}")
            return False
        data = resp.json()
        status = data["status"]
        print(f"  Status: {status} | Progress: {data['progress']}% | Message: {data['message']}")
        if status in ("completed", "failed", "cancelled"):
            break
        time.sleep(1)

    if status != "completed":
        print(f"ERROR: Job ended with status '{status}'")
        return False
    print("✓ Job completed" + (" (partial)" if data["partial"] else ""))

    print("[4] Fetching logs...")
    resp = requests.get(f"{BASE_URL}/logs/{job_id}")
    if resp.status_code == 200:
        print(f"✓ Logs retrieved ({len(resp.text)} bytes):")
        print("---")
        print(resp.text[:500])
        print("---")

    print("[5] Fetching results...")
    resp = requests.get(f"{BASE_URL}/jobs/{job_id}/results")
    if resp.status_code != 200:
        print(f"ERROR: Results fetch failed: {resp.text}")
        return False
    results = resp.json()
    print(f"✓ Results: {len(results)} artifacts")
    for r in results:
        print(f"  - [{r['platform']}] {r['filename']} ({r['size_bytes']} bytes)")
    if not results:
        print("ERROR: No artifacts produced")
        return False

    print("[6] Downloading first artifact...")
    resp = requests.get(f"{BASE_URL}{results[0]['download_url']}")
    if resp.status_code != 200:
        print(f"ERROR: Download failed: {resp.status_code}")
        return False
    print(f"✓ Downloaded {results[0]['filename']} ({len(resp.content)} bytes)")

    print("[7] Downloading all artifacts as ZIP...")
    resp = requests.get(f"{BASE_URL}/download/{job_id}/all.zip")
    if resp.status_code != 200:
        print(f"ERROR: ZIP download failed: {resp.status_code}")
        return False
    print(f"✓ Downloaded all.zip ({len(resp.content)} bytes)")

    print("[8] Cleanup...")
    requests.delete(f"{BASE_URL}/jobs/{job_id}")
    requests.delete(f"{BASE_URL}/sessions/{session_id}")

    print("\n✓✓✓ E2E test PASSED ✓✓✓")
    return True


if __name__ == "__main__":
    try:
        success = run()
        sys.exit(0 if success else 1)
    except Exception as e:
        print(f"FATAL: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)
