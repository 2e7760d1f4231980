# dashboard.py
import os
from html import escape

from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import HTMLResponse, PlainTextResponse

from models import STATUSES
from storage import DEFAULT_DB_PATH, Storage

app = FastAPI(title="mini-hpc dashboard")

_storage = None


def get_storage():
    global _storage
    if _storage is None:
        _storage = Storage(os.environ.get("MINI_HPC_DB", DEFAULT_DB_PATH))
    return _storage


# ---------- Shared UI ----------
BASE_STYLE = """
  body { font-family: Arial, sans-serif; margin: 0; background: #f9f9f9; color: #333; }
  h1 { background: #2196F3; color: white; padding: 15px; margin: 0; }
  h2 { margin-top: 30px; color: #2196F3; }
  .container { padding: 20px; }
  table { border-collapse: collapse; width: 100%; margin-top: 10px; background: white; }
  th, td { border: 1px solid #ddd; padding: 8px; text-align: left; }
  th { background-color: #2196F3; color: white; }
  tr:nth-child(even) { background-color: #f2f2f2; }
  .cards { display: grid; grid-template-columns: repeat(auto-fit,minmax(180px,1fr)); gap: 16px; margin-top: 20px; }
  .card { background: white; border: 1px solid #ddd; border-radius: 6px; padding: 12px; }
  .muted { color: #555; }
"""

def page(title: str, body_html: str) -> str:
    return f"""
    <html>
    <head>
      <title>{title}</title>
      <style>{BASE_STYLE}</style>
    </head>
    <body>
      <h1>{title}</h1>
      <div class="container">
        {body_html}
      </div>
    </body>
    </html>
    """

# ---------- Home ----------
@app.get("/", response_class=HTMLResponse)
def home(db: Storage = Depends(get_storage)):
    counts = db.count_by_status()
    cards = "".join(
        f"<div class='card'><h3>{state}</h3><p>{counts.get(state, 0)}</p></div>" for state in STATUSES
    )

    rows = db.list_jobs(limit=50, newest_first=True)
    table_html = """
    <h2>Recent jobs</h2>
    <table>
      <tr><th>ID</th><th>Name</th><th>Image</th><th>Command</th><th>Status</th><th>Exit code</th></tr>
    """
    for job in rows:
        exit_code = job.exit_code if job.exit_code is not None else "-"
        table_html += (
            f"<tr><td><a href='/jobs/{job.id}/log'>{job.id}</a></td><td>{escape(job.name)}</td>"
            f"<td>{escape(job.image)}</td><td>{escape(job.command)}</td><td>{job.status}</td><td>{exit_code}</td></tr>"
        )
    table_html += "</table>"
    if not rows:
        table_html += "<p class='muted'>No jobs yet. Use the CLI add command to queue one.</p>"

    return page("📊 mini-hpc", f"<div class='cards'>{cards}</div>" + table_html)

# ---------- JSON API ----------
@app.get("/status")
def status(db: Storage = Depends(get_storage)):
    counts = db.count_by_status()
    return {state: counts.get(state, 0) for state in STATUSES}

@app.get("/jobs")
def list_jobs(status: str = None, db: Storage = Depends(get_storage)):
    if status is not None and status not in STATUSES:
        raise HTTPException(status_code=400, detail=f"unknown status '{status}'")
    return [job.to_dict() for job in db.list_jobs(status=status)]

@app.get("/jobs/{job_id}")
def job_detail(job_id: str, db: Storage = Depends(get_storage)):
    job = db.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"job {job_id} not found")
    return job.to_dict()

# ---------- Download log ----------
@app.get("/jobs/{job_id}/log", response_class=PlainTextResponse)
def download_log(job_id: str, db: Storage = Depends(get_storage)):
    job = db.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"job {job_id} not found")
    return PlainTextResponse(job.log or "(no output)", media_type="text/plain")
