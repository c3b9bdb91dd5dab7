import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..")))

from client import CodemodRunClient, CodemodRunClientError  # noqa: E402

API_BASE = os.getenv("CODEMOD_RUN_API", "http://localhost:8081")
TOKEN = os.getenv("CODEMOD_RUN_TOKEN", "")


def run_codemod(transform_path, repo_url, branch="main", engine="jscodeshift"):
    if not os.path.exists(transform_path):
        print(f"Transform not found: {transform_path}")
        return

    with open(transform_path) as f:
        source = f.read()

    client = CodemodRunClient(API_BASE, TOKEN)

    # 1. Submit job
    name = os.path.basename(transform_path)
    print(f"📤 Submitting: {name} against {repo_url}@{branch}...")
    try:
        jobs = client.submit([{"engine": engine, "name": name, "source": source}], repo_url, branch)
    except CodemodRunClientError as e:
        print(f"❌ Failed to submit: {e}")
        return

    job_ids = [job["jobId"] for job in jobs]
    print(f"✅ Jobs created: {', '.join(job_ids)}")

    # 2. Wait for completion
    def show(statuses):
        for job_id, entry in zip(job_ids, statuses):
            print(f"⏳ {job_id}: {entry['status']} {entry.get('message', '')}")

    try:
        client.wait_for_jobs(job_ids, interval=2, on_update=show)
    except CodemodRunClientError as e:
        print(f"❌ Polling stopped: {e}")
        return

    # 3. Get results (handed out once for non-persistent runs)
    for job_id, entry in zip(job_ids, client.get_output(job_ids)):
        if entry["status"] != "success":
            print(f"❌ Job {job_id} failed: {entry.get('message')}")
            continue
        result = entry["result"]
        print(f"🎉 {job_id}: {len(result['changedFiles'])} changed, {len(result['failedFiles'])} failed")
        for path in result["changedFiles"]:
            print(f"   ✏️  {path}")


if __name__ == "__main__":
    # Example usage
    # run_codemod("path/to/transform.js", "https://github.com/org/repo.git")
    print("Tip: Call run_codemod('transform.js', 'https://github.com/org/repo.git') to test.")
