"""
Tkinter GUI for Unveil

Queue URLs, run a worker against the durable queue, and watch per-job
progress. The worker runs in a background thread and reports structured
progress events through a thread-safe queue polled by the Tk loop.
"""

import json
import os
import queue
import subprocess
import sys
import threading
import tkinter as tk
from tkinter import ttk, filedialog, messagebox

from ..core.controller import ArchiveController, RunConfig
from ..core.job_queue import JobQueue
from ..utils.validators import validate_url


class UnveilApp(tk.Tk):
    def __init__(self, db_path: str = "unveil_queue.db"):
        super().__init__()
        self.title("Unveil – Obstruction-Free Page Archiver")
        self.geometry("760x560")

        self.db_path = db_path
        self.jobs = JobQueue(db_path)
        self._worker = None
        self._queue = queue.Queue()
        self._controller = None

        self._build_ui()
        self._load_settings()
        self._refresh_jobs()
        self._poll_queue()
        self.protocol("WM_DELETE_WINDOW", self._on_close)

    def _build_ui(self):
        frm = ttk.Frame(self, padding=12)
        frm.pack(fill=tk.BOTH, expand=True)

        ttk.Label(frm, text="URL to archive").grid(row=0, column=0, sticky="w")
        self.url_var = tk.StringVar()
        url_entry = ttk.Entry(frm, textvariable=self.url_var, width=70)
        url_entry.grid(row=1, column=0, columnspan=2, sticky="ew", pady=4)
        url_entry.bind("<Return>", lambda _e: self._add_url())
        ttk.Button(frm, text="Add to queue", command=self._add_url).grid(row=1, column=2, sticky="e")

        ttk.Label(frm, text="Archive directory").grid(row=2, column=0, sticky="w")
        self.out_var = tk.StringVar(value="archives")
        ttk.Entry(frm, textvariable=self.out_var, width=60).grid(row=3, column=0, columnspan=2, sticky="ew", pady=4)
        ttk.Button(frm, text="Browse", command=self._choose_output).grid(row=3, column=2, sticky="e")

        opts = ttk.Frame(frm)
        opts.grid(row=4, column=0, columnspan=3, sticky="ew", pady=4)
        self.headful_var = tk.BooleanVar(value=False)
        self.guard_var = tk.BooleanVar(value=True)
        ttk.Checkbutton(opts, text="Show browser", variable=self.headful_var).pack(side=tk.LEFT)
        ttk.Checkbutton(opts, text="Navigation guard in page.html", variable=self.guard_var).pack(side=tk.LEFT, padx=12)
        ttk.Label(opts, text="Delay (s)").pack(side=tk.LEFT, padx=(12, 2))
        self.delay_var = tk.DoubleVar(value=2.0)
        ttk.Entry(opts, textvariable=self.delay_var, width=6).pack(side=tk.LEFT)
        ttk.Label(opts, text="Max jobs").pack(side=tk.LEFT, padx=(12, 2))
        self.limit_var = tk.IntVar(value=0)
        ttk.Entry(opts, textvariable=self.limit_var, width=6).pack(side=tk.LEFT)

        ctrl_frame = ttk.Frame(frm)
        ctrl_frame.grid(row=5, column=0, columnspan=3, sticky="ew", pady=8)
        self.start_btn = ttk.Button(ctrl_frame, text="Start", command=self._start)
        self.stop_btn = ttk.Button(ctrl_frame, text="Stop", command=self._stop, state=tk.DISABLED)
        self.requeue_btn = ttk.Button(ctrl_frame, text="Requeue selected", command=self._requeue_selected)
        self.start_btn.pack(side=tk.LEFT)
        self.stop_btn.pack(side=tk.LEFT, padx=8)
        self.requeue_btn.pack(side=tk.LEFT, padx=8)
        ttk.Button(ctrl_frame, text="Open Index", command=self._open_index).pack(side=tk.LEFT, padx=8)
        ttk.Button(ctrl_frame, text="View Log", command=lambda: self._open_path(os.path.abspath("logs"))).pack(side=tk.LEFT)

        self.progress = ttk.Progressbar(frm, mode='indeterminate')
        self.progress.grid(row=6, column=0, columnspan=3, sticky="ew", pady=4)
        counters_frame = ttk.Frame(frm)
        counters_frame.grid(row=7, column=0, columnspan=3, sticky="ew")
        self.status_var = tk.StringVar(value="Idle")
        ttk.Label(counters_frame, textvariable=self.status_var).pack(side=tk.LEFT)
        self.count_vars = {}
        for status in ("pending", "processing", "completed", "failed"):
            var = tk.IntVar(value=0)
            self.count_vars[status] = var
            ttk.Label(counters_frame, text=f"   {status.capitalize()}:").pack(side=tk.LEFT)
            ttk.Label(counters_frame, textvariable=var).pack(side=tk.LEFT)

        self.tree = ttk.Treeview(frm, columns=("id", "status", "url"), show='headings', height=9)
        self.tree.heading("id", text="#")
        self.tree.heading("status", text="Status")
        self.tree.heading("url", text="URL")
        self.tree.column("id", width=50)
        self.tree.column("status", width=100)
        self.tree.grid(row=8, column=0, columnspan=3, sticky="nsew", pady=6)

        self.log = tk.Text(frm, height=7)
        self.log.grid(row=9, column=0, columnspan=3, sticky="nsew", pady=6)
        frm.rowconfigure(8, weight=1)
        frm.columnconfigure(0, weight=1)

    def _choose_output(self):
        path = filedialog.askdirectory(initialdir=self.out_var.get() or ".")
        if path:
            self.out_var.set(path)

    def _add_url(self):
        ok, url, err = validate_url(self.url_var.get())
        if not ok:
            messagebox.showerror("Validation", err)
            return
        if self.jobs.submit(url):
            self._log(f"Queued: {url}")
            self.url_var.set("")
        else:
            self._log(f"Already queued: {url}")
        self._refresh_jobs()

    def _requeue_selected(self):
        for item in self.tree.selection():
            job_id = int(self.tree.item(item, "values")[0])
            if self.jobs.requeue(job_id):
                self._log(f"Requeued job {job_id}")
        self._refresh_jobs()

    def _start(self):
        self.start_btn.config(state=tk.DISABLED)
        self.stop_btn.config(state=tk.NORMAL)
        self.progress.start(80)
        cfg = RunConfig(
            output_dir=self.out_var.get().strip() or "archives",
            db_path=self.db_path,
            delay_secs=max(0.1, float(self.delay_var.get() or 2.0)),
            headless=not bool(self.headful_var.get()),
            inject_nav_guard=bool(self.guard_var.get()),
        )
        self._controller = ArchiveController(cfg)
        limit = int(self.limit_var.get() or 0)

        def run_worker():
            try:
                stats = self._controller.run_queue(limit=limit,
                                                   progress=lambda e: self._queue.put(("progress", e)))
                self._queue.put(("done", stats))
            except Exception as e:
                self._queue.put(("error", str(e)))

        self._worker = threading.Thread(target=run_worker, daemon=True)
        self._worker.start()
        self._log("Worker started")
        self._save_settings()

    def _stop(self):
        if self._controller:
            self._controller.stop()
        self._log("Stop requested")

    def _finish(self, status: str):
        self.progress.stop()
        self.start_btn.config(state=tk.NORMAL)
        self.stop_btn.config(state=tk.DISABLED)
        self.status_var.set(status)
        self._refresh_jobs()

    def _poll_queue(self):
        try:
            while True:
                kind, payload = self._queue.get_nowait()
                if kind == "progress":
                    self._handle_progress(payload)
                elif kind == "done":
                    self._finish("Finished")
                    self._log(f"Finished: {payload}")
                elif kind == "error":
                    self._finish("Error")
                    self._log(f"Error: {payload}")
        except queue.Empty:
            pass
        self.after(150, self._poll_queue)

    def _handle_progress(self, data: dict):
        t = data.get('type')
        if t == 'job':
            stage = data.get('stage', '')
            url = data.get('url', '')
            if stage == 'failed':
                reason = data.get('reason', '')
                self._log(f"Failed: {url} ({reason})")
            elif stage in ('claimed', 'completed'):
                self._log(f"{stage.capitalize()}: {url}")
            self.status_var.set(f"{stage.replace('_', ' ').capitalize()} – {url}")
            if stage in ('claimed', 'completed', 'failed'):
                self._refresh_jobs()
        elif t == 'counters':
            stats = data.get('stats', {})
            self._log(f"Processed {stats.get('processed', 0)} job(s), "
                      f"{stats.get('stages_failed', 0)} stage warning(s)")

    def _refresh_jobs(self):
        for status, count in self.jobs.stats().items():
            self.count_vars[status].set(count)
        self.tree.delete(*self.tree.get_children())
        for job in self.jobs.list_jobs(limit=500):
            self.tree.insert('', tk.END, values=(job.id, job.status, job.url))

    def _log(self, msg: str):
        self.log.insert(tk.END, f"{msg}\n")
        self.log.see(tk.END)

    def _open_path(self, path: str):
        try:
            if sys.platform.startswith('darwin'):
                subprocess.Popen(['open', path])
            elif os.name == 'nt':
                os.startfile(path)
            else:
                subprocess.Popen(['xdg-open', path])
        except OSError as e:
            messagebox.showerror("Open", str(e))

    def _open_index(self):
        base = self.out_var.get().strip() or 'archives'
        self._open_path(os.path.abspath(os.path.join(base, 'index.html')))

    # Settings persistence
    def _settings_path(self):
        return os.path.join(os.path.abspath('.'), '.unveil_gui.json')

    def _load_settings(self):
        path = self._settings_path()
        if not os.path.exists(path):
            return
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError):
            return
        self.out_var.set(data.get('output_dir', 'archives'))
        self.delay_var.set(float(data.get('delay_secs', 2.0)))
        self.limit_var.set(int(data.get('limit', 0)))
        self.headful_var.set(bool(data.get('headful', False)))
        self.guard_var.set(bool(data.get('nav_guard', True)))

    def _save_settings(self):
        data = {
            'output_dir': self.out_var.get().strip() or 'archives',
            'delay_secs': float(self.delay_var.get() or 2.0),
            'limit': int(self.limit_var.get() or 0),
            'headful': bool(self.headful_var.get()),
            'nav_guard': bool(self.guard_var.get()),
        }
        try:
            with open(self._settings_path(), 'w', encoding='utf-8') as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
        except OSError as e:
            self._log(f"Could not save settings: {e}")

    def _on_close(self):
        if self._controller:
            self._controller.stop()
        self.jobs.close()
        self.destroy()


def main(db_path: str = "unveil_queue.db"):
    app = UnveilApp(db_path)
    app.mainloop()


if __name__ == "__main__":
    main()
