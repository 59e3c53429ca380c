"""
Mail Merge - GUI Application
Pick a template, a spreadsheet and a destination folder, then generate one
document (or PDF) per spreadsheet row
"""

import tkinter as tk
from tkinter import ttk, filedialog, messagebox
import threading
import os
import platform
import subprocess
from mailmerge_engine import DEFAULT_MAX_CONCURRENCY, LibreOfficePdfConverter, MailMergeOrchestrator

_LOG_MAX_LINES = 5000
_LOG_TRIM_LINES = 1000


class MailMergeGUI:
    def __init__(self, root):
        self.root = root
        self.root.title("Mail Merge")
        self.root.geometry("820x640")
        self.root.resizable(True, True)

        # Variables
        self.template_path = tk.StringVar()
        self.spreadsheet_path = tk.StringVar()
        self.destination_folder = tk.StringVar()
        self.convert_to_pdf = tk.BooleanVar(value=False)
        self.max_concurrency = tk.IntVar(value=DEFAULT_MAX_CONCURRENCY)
        self.failed_count_var = tk.IntVar(value=0)

        self.is_processing = False
        self.cancel_event = threading.Event()
        self._merge_thread = None

        # Build UI
        self.create_widgets()
        self._check_pdf_availability()

        self.root.protocol("WM_DELETE_WINDOW", self._on_window_close)

    def create_widgets(self):
        """Create all UI widgets"""

        header_frame = tk.Frame(self.root, bg='#2E86AB', height=60)
        header_frame.pack(fill=tk.X)
        header_frame.pack_propagate(False)

        tk.Label(
            header_frame,
            text="Mail Merge",
            font=('Arial', 18, 'bold'),
            bg='#2E86AB',
            fg='white'
        ).pack(pady=15)

        content_frame = tk.Frame(self.root, padx=20, pady=20)
        content_frame.pack(fill=tk.BOTH, expand=True)
        content_frame.grid_columnconfigure(0, weight=1)
        content_frame.grid_rowconfigure(11, weight=1)

        self._add_path_row(content_frame, 0, "Template (.docx):", self.template_path, self.browse_template)
        self._add_path_row(content_frame, 2, "Spreadsheet (.xlsx):", self.spreadsheet_path, self.browse_spreadsheet)
        self._add_path_row(content_frame, 4, "Destination Folder:", self.destination_folder, self.browse_destination)

        settings_frame = tk.LabelFrame(content_frame, text="Settings", padx=10, pady=10)
        settings_frame.grid(row=6, column=0, sticky='ew', pady=(0, 15))

        self.pdf_checkbox = tk.Checkbutton(
            settings_frame, text="Convert to PDF (requires LibreOffice)", variable=self.convert_to_pdf
        )
        self.pdf_checkbox.grid(row=0, column=0, sticky='w', padx=(0, 20))

        tk.Label(settings_frame, text="Parallel rows:").grid(row=0, column=1, sticky='w', padx=(0, 10))
        tk.Spinbox(settings_frame, from_=1, to=64, textvariable=self.max_concurrency, width=6).grid(
            row=0, column=2, sticky='w'
        )

        button_frame = tk.Frame(content_frame)
        button_frame.grid(row=7, column=0, sticky='ew', pady=(0, 15))
        button_frame.grid_columnconfigure(0, weight=3)
        button_frame.grid_columnconfigure(1, weight=1)

        self.start_button = tk.Button(
            button_frame,
            text="Generate Documents",
            command=self.start_merge,
            bg='#2E86AB',
            fg='white',
            font=('Arial', 12, 'bold'),
            height=2,
            cursor='hand2'
        )
        self.start_button.grid(row=0, column=0, sticky='ew', padx=(0, 8))

        self.cancel_button = tk.Button(
            button_frame,
            text="Cancel",
            command=self._request_cancel,
            bg='#dc3545',
            fg='white',
            font=('Arial', 12, 'bold'),
            height=2,
            state='disabled',
        )
        self.cancel_button.grid(row=0, column=1, sticky='ew')

        self.status_label = tk.Label(content_frame, text="Status: Ready", fg='#666')
        self.status_label.grid(row=8, column=0, sticky='w', pady=(0, 5))

        self.progress = ttk.Progressbar(content_frame, mode='determinate')
        self.progress.grid(row=9, column=0, sticky='ew', pady=(0, 10))

        stats_frame = tk.Frame(content_frame)
        stats_frame.grid(row=10, column=0, sticky='ew')
        self.rows_processed_label = tk.Label(stats_frame, text="Rows Processed: 0", fg='#666')
        self.rows_processed_label.grid(row=0, column=0, sticky='w')
        self.failed_label = tk.Label(stats_frame, text="Failed Rows: 0", fg='#666')
        self.failed_label.grid(row=0, column=1, sticky='w', padx=(20, 0))

        log_frame = tk.Frame(content_frame)
        log_frame.grid(row=11, column=0, sticky='nsew', pady=(10, 0))
        log_frame.grid_columnconfigure(0, weight=1)
        log_frame.grid_rowconfigure(0, weight=1)
        self.log_text = tk.Text(log_frame, height=12, wrap='word', state='disabled')
        self.log_text.grid(row=0, column=0, sticky='nsew')
        log_scroll = ttk.Scrollbar(log_frame, orient='vertical', command=self.log_text.yview)
        log_scroll.grid(row=0, column=1, sticky='ns')
        self.log_text.configure(yscrollcommand=log_scroll.set)

    def _add_path_row(self, parent, row, label, variable, command):
        tk.Label(parent, text=label, font=('Arial', 10, 'bold')).grid(row=row, column=0, sticky='w', pady=(0, 5))
        frame = tk.Frame(parent)
        frame.grid(row=row + 1, column=0, sticky='ew', pady=(0, 15))
        tk.Entry(frame, textvariable=variable, width=50, state='readonly').pack(
            side=tk.LEFT, fill=tk.X, expand=True, padx=(0, 10)
        )
        tk.Button(frame, text="Browse...", command=command, width=10).pack(side=tk.RIGHT)

    def _check_pdf_availability(self):
        """Disable the PDF checkbox if LibreOffice cannot be found."""
        available, reason = LibreOfficePdfConverter().is_available()
        if not available:
            self.convert_to_pdf.set(False)
            self.pdf_checkbox.config(state='disabled', text=f"Convert to PDF — not available ({reason})")

    def _on_window_close(self):
        """Handle window close (X button). Confirm if a run is in progress."""
        if self.is_processing:
            if messagebox.askyesno(
                "Run in progress",
                "Documents are still being generated.\n\nCancel the remaining rows and close?",
            ):
                self.cancel_event.set()
                if self._merge_thread is not None:
                    self._merge_thread.join(timeout=5)
                self.root.destroy()
        else:
            self.root.destroy()

    def _request_cancel(self):
        if not self.is_processing:
            return
        self.cancel_event.set()
        self.cancel_button.config(state='disabled', text='Cancelling...')
        self.status_label.config(text="Status: Cancelling...", fg='#dc3545')
        self._append_log("[INFO] Cancel requested. Rows already started will finish.")

    def browse_template(self):
        path = filedialog.askopenfilename(
            title="Select Template",
            filetypes=[("Word documents", "*.docx"), ("All files", "*.*")],
        )
        if path:
            self.template_path.set(path)

    def browse_spreadsheet(self):
        path = filedialog.askopenfilename(
            title="Select Spreadsheet",
            filetypes=[("Excel workbooks", "*.xlsx"), ("All files", "*.*")],
        )
        if path:
            self.spreadsheet_path.set(path)
            if not self.destination_folder.get():
                self.destination_folder.set(os.path.dirname(path))

    def browse_destination(self):
        folder = filedialog.askdirectory(title="Select Destination Folder")
        if folder:
            self.destination_folder.set(folder)

    def _append_log(self, line):
        self.log_text.config(state='normal')
        self.log_text.insert(tk.END, line + "\n")
        line_count = int(self.log_text.index('end-1c').split('.')[0])
        if line_count > _LOG_MAX_LINES:
            self.log_text.delete('1.0', f'{_LOG_TRIM_LINES + 1}.0')
        self.log_text.see(tk.END)
        self.log_text.config(state='disabled')

    def _reset_live_state(self):
        self.failed_count_var.set(0)
        self.failed_label.config(text="Failed Rows: 0")
        self.rows_processed_label.config(text="Rows Processed: 0")
        self.progress.config(value=0, maximum=1)
        self.log_text.config(state='normal')
        self.log_text.delete("1.0", tk.END)
        self.log_text.config(state='disabled')

    def on_progress_update(self, current, total, message):
        try:
            self.root.after(0, self._handle_progress_update, current, total, message)
        except (RuntimeError, tk.TclError):
            pass  # Window may have been destroyed

    def _handle_progress_update(self, current, total, message):
        self.progress.config(maximum=max(total, 1), value=current)
        self.status_label.config(text=f"Status: {message}", fg='#2E86AB')
        self.rows_processed_label.config(text=f"Rows Processed: {current}/{max(total, 1)}")
        self._append_log(f"[PROGRESS] {message} ({current}/{total})")

    def on_run_event(self, payload):
        try:
            self.root.after(0, self._handle_run_event, payload)
        except (RuntimeError, tk.TclError):
            pass  # Window may have been destroyed

    def _handle_run_event(self, payload):
        if not isinstance(payload, dict):
            return
        event = str(payload.get("event", "event"))
        if event in {"row_completed", "row_failed"}:
            # Already shown through the progress callback.
            if event == "row_failed":
                self.failed_count_var.set(self.failed_count_var.get() + 1)
                self.failed_label.config(text=f"Failed Rows: {self.failed_count_var.get()}")
            return
        level = str(payload.get("level", "INFO")).upper()
        self._append_log(f"[{level}] {event}: {payload.get('message', '')}")

    def start_merge(self):
        """Start the mail merge"""
        if self.is_processing:
            return

        try:
            workers = self.max_concurrency.get()
            if workers < 1:
                raise ValueError("must be >= 1")
        except (tk.TclError, ValueError):
            messagebox.showerror("Error", "Parallel rows must be a positive number.")
            return

        if not self.template_path.get():
            messagebox.showerror("Error", "Please select a template")
            return
        if not self.spreadsheet_path.get():
            messagebox.showerror("Error", "Please select a spreadsheet")
            return
        if not self.destination_folder.get():
            messagebox.showerror("Error", "Please select a destination folder")
            return

        self.is_processing = True
        self.cancel_event.clear()
        self.start_button.config(state='disabled', text='Generating...')
        self.cancel_button.config(state='normal', text='Cancel')
        self.status_label.config(text="Status: Getting ready...", fg='#2E86AB')
        self._reset_live_state()
        self._append_log("Run started.")

        self._merge_thread = threading.Thread(target=self.run_merge, daemon=True)
        self._merge_thread.start()

    def run_merge(self):
        """Run the mail merge (in separate thread)"""
        try:
            orchestrator = MailMergeOrchestrator(
                max_concurrency=self.max_concurrency.get(),
                convert_to_pdf=self.convert_to_pdf.get(),
            )
            result = orchestrator.run(
                self.template_path.get(),
                self.spreadsheet_path.get(),
                self.destination_folder.get(),
                progress_callback=self.on_progress_update,
                event_callback=self.on_run_event,
                cancel_event=self.cancel_event,
            )
            try:
                self.root.after(0, self.on_merge_complete, result)
            except (RuntimeError, tk.TclError):
                pass

        except Exception as e:
            try:
                self.root.after(0, self.on_merge_error, str(e))
            except (RuntimeError, tk.TclError):
                pass

    def _finish_run(self):
        self.is_processing = False
        self.start_button.config(state='normal', text='Generate Documents')
        self.cancel_button.config(state='disabled', text='Cancel')

    def on_merge_complete(self, result):
        """Called when every row has been processed"""
        self._finish_run()
        summary = result.get("summary", {})
        status = summary.get("status", "completed")
        completed_total = summary.get("completed_total", 0)
        failed_total = summary.get("failed_total", 0)
        cancelled_total = summary.get("cancelled_total", 0)

        colours = {"completed": '#28a745', "completed_with_failures": '#e67e22', "cancelled": '#dc3545'}
        self.status_label.config(text=f"Status: {status.replace('_', ' ').capitalize()}", fg=colours.get(status, '#666'))
        self._append_log(f"Finished in {result.get('elapsed_seconds', 0):.0f}s.")

        failed_preview = ""
        failed_items = [item for item in result.get("results", []) if item.get("status") == "failed"]
        if failed_items:
            preview_lines = [f"- {item.get('key')}: {item.get('error')}" for item in failed_items[:5]]
            failed_preview = "Failed rows:\n" + "\n".join(preview_lines) + "\n\n"

        report = messagebox.showinfo if status == "completed" else messagebox.showwarning
        report(
            "Mail merge finished",
            f"Generated: {completed_total}\n"
            f"Failed: {failed_total}\n"
            f"Cancelled: {cancelled_total}\n"
            f"Elapsed: {result.get('elapsed_seconds', 0):.0f}s\n\n"
            f"{failed_preview}"
            f"Run log:\n{result.get('logs', {}).get('text_log') or 'N/A'}"
        )

        if completed_total and messagebox.askyesno("Open Folder", "Would you like to open the destination folder?"):
            folder_path = self.destination_folder.get()
            try:
                if platform.system() == 'Windows':
                    os.startfile(folder_path)
                elif platform.system() == 'Darwin':  # macOS
                    subprocess.run(['open', folder_path], check=True)
                else:  # Linux and other Unix-like systems
                    subprocess.run(['xdg-open', folder_path], check=True)
            except (OSError, subprocess.CalledProcessError):
                messagebox.showwarning("Cannot Open Folder",
                                       f"Documents saved to:\n{folder_path}\n\n"
                                       f"Please open manually.")

    def on_merge_error(self, error_msg):
        """Called when the run is aborted before generation"""
        self._finish_run()
        self.status_label.config(text="Status: Error", fg='#dc3545')
        self._append_log(f"[ERROR] {error_msg}")
        messagebox.showerror("Error", f"The mail merge could not start:\n\n{error_msg}")


def main():
    """Main entry point"""
    root = tk.Tk()
    MailMergeGUI(root)
    root.mainloop()


if __name__ == "__main__":
    main()
