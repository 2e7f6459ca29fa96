"""Main assistant window.

Tkinter has no asyncio integration, so the window runs as an asyncio task
that pumps ``root.update()`` once per display tick. Every session coroutine
runs on the same loop, which keeps all state mutation on one thread.
"""

import asyncio
import logging
import tkinter as tk
import webbrowser
from tkinter import ttk, scrolledtext
from typing import Optional, Set

import cv2
import numpy as np
from PIL import Image, ImageTk

from ..core.entities import PreviewState, Role
from ..core.session import AssistantSession
from ..services.transform_service import STYLE_PRESETS
from ..utils.image_utils import to_thumbnail
from .overlay_renderer import OverlayState, SurfaceSync, render_overlay

logger = logging.getLogger(__name__)


def pick_preview(suggestions, chosen_id: Optional[int] = None):
    """Suggestion whose preview to show: the chosen one if loaded, else the last loaded one."""
    loaded = [s for s in suggestions if s.preview_state is PreviewState.LOADED and s.preview_image is not None]
    return next((s for s in loaded if s.id == chosen_id), loaded[-1] if loaded else None)


class MainWindow:
    """Live view, chat panel and controls for one assistant session."""

    COLORS = {
        'bg_primary': '#1e1e1e',
        'bg_secondary': '#2d2d2d',
        'bg_tertiary': '#3c3c3c',
        'accent_primary': '#8b5cf6',
        'text_primary': '#ffffff',
        'text_muted': '#999999',
        'success': '#4caf50',
        'warning': '#ff9800',
        'error': '#f44336',
    }

    def __init__(self, root: tk.Tk, session: AssistantSession, fps: int = 30):
        self.root = root
        self.session = session
        self.frame_delay = 1.0 / max(1, fps)
        self.surface = SurfaceSync()

        self._running = False
        self._tasks: Set[asyncio.Task] = set()
        self._photo: Optional[ImageTk.PhotoImage] = None
        self._canvas_image_id: Optional[int] = None
        self._preview_photo: Optional[ImageTk.PhotoImage] = None
        self._preview_key: Optional[tuple] = None
        self._chosen_suggestion: Optional[int] = None
        self._rendered_messages = 0
        self._registry_dirty = True
        self._auto_scan = tk.BooleanVar(value=False)
        self._style = tk.StringVar(value=session.active_style)

        self.session.registry.add_listener(self._on_registry_changed)
        self._setup_window()
        self._build_ui()

    def _setup_window(self):
        self.root.title("Live Scene Assistant")
        self.root.geometry("1280x800")
        self.root.configure(bg=self.COLORS['bg_primary'])
        self.root.grid_rowconfigure(1, weight=1)
        self.root.grid_columnconfigure(0, weight=1)
        self.root.protocol("WM_DELETE_WINDOW", self.close)

    def _build_ui(self):
        self._build_toolbar()
        self._build_main_content()
        self._build_status_bar()

    def _build_toolbar(self):
        toolbar = tk.Frame(self.root, bg=self.COLORS['bg_secondary'], height=50)
        toolbar.grid(row=0, column=0, sticky='ew')

        left = tk.Frame(toolbar, bg=self.COLORS['bg_secondary'])
        left.pack(side='left', padx=15, pady=10)
        ttk.Button(left, text="Scan", command=lambda: self._spawn(self.session.run_detection())).pack(side='left', padx=(0, 8))
        ttk.Checkbutton(left, text="Auto-Scan", variable=self._auto_scan,
                        command=self._on_toggle_auto_scan).pack(side='left', padx=(0, 8))
        ttk.Button(left, text="Suggest", command=lambda: self._spawn(self.session.suggest())).pack(side='left', padx=(0, 8))
        ttk.Button(left, text="Lighting", command=lambda: self._spawn(self.session.analyze_lighting())).pack(side='left', padx=(0, 8))
        ttk.Button(left, text="Voice", command=lambda: self._spawn(self.session.listen_and_ask())).pack(side='left', padx=(0, 8))

        right = tk.Frame(toolbar, bg=self.COLORS['bg_secondary'])
        right.pack(side='right', padx=15, pady=10)
        ttk.Button(right, text="Clear Transforms", command=self.session.clear_transforms).pack(side='right')

    def _build_main_content(self):
        main = tk.Frame(self.root, bg=self.COLORS['bg_primary'])
        main.grid(row=1, column=0, sticky='nsew', padx=10, pady=10)
        main.grid_rowconfigure(0, weight=1)
        main.grid_columnconfigure(0, weight=2)
        main.grid_columnconfigure(1, weight=1)

        self._build_video_panel(main)
        self._build_side_panels(main)

    def _build_video_panel(self, parent):
        video_frame = tk.Frame(parent, bg=self.COLORS['bg_secondary'], relief='solid', bd=1)
        video_frame.grid(row=0, column=0, sticky='nsew', padx=(0, 5))

        self._canvas = tk.Canvas(video_frame, bg='black', highlightthickness=0)
        self._canvas.pack(fill='both', expand=True)
        self._canvas.bind('<Configure>', self._on_canvas_configure)
        self._canvas.bind('<Button-1>', self._on_canvas_click)

        styles = tk.Frame(video_frame, bg=self.COLORS['bg_secondary'])
        styles.pack(fill='x', pady=5)
        for preset in STYLE_PRESETS.values():
            ttk.Radiobutton(styles, text=preset.label, value=preset.id, variable=self._style,
                            command=self._on_apply_style).pack(side='left', padx=4)
        ttk.Button(styles, text="Upgrade to HD", command=self._on_upgrade).pack(side='right', padx=6)

    def _build_side_panels(self, parent):
        notebook = ttk.Notebook(parent)
        notebook.grid(row=0, column=1, sticky='nsew', padx=(5, 0))

        # Chat
        chat = tk.Frame(notebook, bg=self.COLORS['bg_secondary'])
        self._chat_log = scrolledtext.ScrolledText(chat, wrap='word', state='disabled',
                                                   bg=self.COLORS['bg_primary'], fg=self.COLORS['text_primary'])
        self._chat_log.tag_configure('user', foreground='#c4b5fd')
        self._chat_log.tag_configure('assistant', foreground=self.COLORS['text_primary'])
        self._chat_log.tag_configure('source', foreground=self.COLORS['text_muted'])
        self._chat_log.pack(fill='both', expand=True, padx=5, pady=5)
        entry_row = tk.Frame(chat, bg=self.COLORS['bg_secondary'])
        entry_row.pack(fill='x', padx=5, pady=(0, 5))
        self._chat_entry = ttk.Entry(entry_row)
        self._chat_entry.pack(side='left', fill='x', expand=True)
        self._chat_entry.bind('<Return>', self._on_chat_send)
        ttk.Button(entry_row, text="Send", command=self._on_chat_send).pack(side='right', padx=(5, 0))
        notebook.add(chat, text="Chat")

        # Objects
        objects = tk.Frame(notebook, bg=self.COLORS['bg_secondary'])
        self._objects_list = tk.Listbox(objects, bg=self.COLORS['bg_primary'], fg=self.COLORS['text_primary'])
        self._objects_list.pack(fill='both', expand=True, padx=5, pady=5)
        self._objects_list.bind('<<ListboxSelect>>', self._on_object_list_select)
        notebook.add(objects, text="Objects")

        # Suggestions
        suggestions = tk.Frame(notebook, bg=self.COLORS['bg_secondary'])
        self._suggestions_list = tk.Listbox(suggestions, bg=self.COLORS['bg_primary'], fg=self.COLORS['text_primary'])
        self._suggestions_list.pack(fill='both', expand=True, padx=5, pady=5)
        self._suggestions_list.bind('<<ListboxSelect>>', self._on_suggestion_select)
        self._queries_label = tk.Label(suggestions, text="", anchor='w', justify='left', wraplength=280,
                                       bg=self.COLORS['bg_secondary'], fg=self.COLORS['text_muted'],
                                       font=('Segoe UI', 8))
        self._queries_label.pack(fill='x', padx=5)
        self._preview_label = tk.Label(suggestions, bg=self.COLORS['bg_secondary'])
        self._preview_label.pack(padx=5, pady=5)
        buttons = tk.Frame(suggestions, bg=self.COLORS['bg_secondary'])
        buttons.pack(fill='x', padx=5, pady=(0, 5))
        ttk.Button(buttons, text="Preview", command=self._on_preview).pack(side='left')
        ttk.Button(buttons, text="Shop", command=self._on_shop).pack(side='left', padx=5)
        notebook.add(suggestions, text="Suggestions")

    def _build_status_bar(self):
        bar = tk.Frame(self.root, bg=self.COLORS['bg_tertiary'], height=28)
        bar.grid(row=2, column=0, sticky='ew')
        self._status_label = tk.Label(bar, text="STANDBY", bg=self.COLORS['bg_tertiary'],
                                      fg=self.COLORS['text_muted'], font=('Segoe UI', 9))
        self._status_label.pack(side='left', padx=10)
        self._camera_label = tk.Label(bar, text="", bg=self.COLORS['bg_tertiary'],
                                      fg=self.COLORS['text_muted'], font=('Segoe UI', 9))
        self._camera_label.pack(side='left', padx=10)
        ttk.Button(bar, text="Dismiss", command=self._on_dismiss_notice).pack(side='right', padx=5)
        ttk.Button(bar, text="Retry", command=self._on_retry_notice).pack(side='right')
        self._notice_label = tk.Label(bar, text="", bg=self.COLORS['bg_tertiary'],
                                      fg=self.COLORS['warning'], font=('Segoe UI', 9))
        self._notice_label.pack(side='right', padx=10)

    # -- event handlers -------------------------------------------------------------

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"UI task failed: {task.exception()}", exc_info=task.exception())

    def _on_registry_changed(self):
        self._registry_dirty = True

    def _on_canvas_configure(self, event):
        if self.surface.resize(event.width, event.height):
            self._redraw()

    def _on_canvas_click(self, event):
        x, y = self.surface.normalize_point(event.x, event.y)
        self.session.select_at(x, y)

    def _on_object_list_select(self, event=None):
        selection = self._objects_list.curselection()
        if selection:
            objects = self.session.registry.get_objects()
            if selection[0] < len(objects):
                self.session.registry.select(objects[selection[0]].name)

    def _on_toggle_auto_scan(self):
        self.session.set_auto_scan(self._auto_scan.get())

    def _on_apply_style(self):
        self.session.apply_style(self._style.get())

    def _on_upgrade(self):
        self._spawn(self.session.upgrade_transform(style=self._style.get()))

    def _on_chat_send(self, event=None):
        text = self._chat_entry.get().strip()
        if not text:
            return
        self._chat_entry.delete(0, 'end')
        self._spawn(self.session.ask(text))

    def _selected_suggestion_id(self) -> Optional[int]:
        selection = self._suggestions_list.curselection()
        suggestions = self.session.conversation.get_suggestions()
        if not selection or selection[0] >= len(suggestions):
            return None
        return suggestions[selection[0]].id

    def _on_suggestion_select(self, event=None):
        suggestion_id = self._selected_suggestion_id()
        if suggestion_id is not None:
            self._chosen_suggestion = suggestion_id

    def _on_preview(self):
        suggestion_id = self._selected_suggestion_id()
        if suggestion_id is not None:
            self._spawn(self.session.fetch_preview(suggestion_id))

    def _on_shop(self):
        suggestion_id = self._selected_suggestion_id()
        for suggestion in self.session.conversation.get_suggestions():
            if suggestion.id == suggestion_id:
                webbrowser.open(suggestion.product_url)

    def _on_retry_notice(self):
        notices = self.session.notices
        if notices:
            self._spawn(self.session.retry_notice(notices[-1].flow))

    def _on_dismiss_notice(self):
        notices = self.session.notices
        if notices:
            self.session.dismiss_notice(notices[-1].flow)

    # -- rendering --------------------------------------------------------------------

    def _overlay_state(self) -> OverlayState:
        registry = self.session.registry
        return OverlayState(objects=registry.get_objects(), selected_name=registry.selected_name,
                            transforms=registry.get_transforms())

    def _redraw(self):
        frame = self.session.frame_source.get_current_frame()
        if frame is None:
            frame = np.zeros((self.surface.height, self.surface.width, 3), dtype=np.uint8)
        rendered = render_overlay(self.surface.fit_frame(frame), self._overlay_state(),
                                  self.session.config.overlay_opacity)
        rgb = cv2.cvtColor(rendered, cv2.COLOR_BGR2RGB)
        self._photo = ImageTk.PhotoImage(Image.fromarray(rgb))
        if self._canvas_image_id is None:
            self._canvas_image_id = self._canvas.create_image(0, 0, anchor='nw', image=self._photo)
        else:
            self._canvas.itemconfig(self._canvas_image_id, image=self._photo)

    def _refresh_preview(self, suggestions):
        """Show the chosen suggestion's preview, else the most recent one that loaded."""
        shown = pick_preview(suggestions, self._chosen_suggestion)
        key = (shown.id, id(shown.preview_image)) if shown else None
        if key == self._preview_key:
            return
        self._preview_key = key
        if shown is None:
            self._preview_photo = None
            self._preview_label.configure(image='')
            return
        self._preview_photo = ImageTk.PhotoImage(to_thumbnail(shown.preview_image))
        self._preview_label.configure(image=self._preview_photo)

    def _refresh_panels(self):
        messages = self.session.conversation.get_messages()
        if len(messages) != self._rendered_messages:
            self._chat_log.configure(state='normal')
            for message in messages[self._rendered_messages:]:
                tag = 'user' if message.role is Role.USER else 'assistant'
                prefix = "You" if message.role is Role.USER else "Assistant"
                self._chat_log.insert('end', f"{prefix}: {message.content}\n", tag)
                for source in message.sources:
                    self._chat_log.insert('end', f"  [{source.title or source.url}] {source.url}\n", 'source')
                self._chat_log.insert('end', "\n")
            self._chat_log.configure(state='disabled')
            self._chat_log.see('end')
            self._rendered_messages = len(messages)

        if self._registry_dirty:
            self._registry_dirty = False
            self._objects_list.delete(0, 'end')
            for obj in self.session.registry.get_objects():
                mark = "*" if self.session.registry.has_transform(obj.name) else " "
                self._objects_list.insert('end', f"{mark} {obj.name} [{obj.category.value}]")

        suggestions = self.session.conversation.get_suggestions()
        labels = []
        for s in suggestions:
            state = {PreviewState.LOADING: " (loading)", PreviewState.LOADED: " (preview)",
                     PreviewState.FAILED: " (preview failed)"}.get(s.preview_state, "")
            labels.append(f"{s.id}. {s.name} {s.estimated_price}{state}")
        if list(self._suggestions_list.get(0, 'end')) != labels:
            self._suggestions_list.delete(0, 'end')
            for label in labels:
                self._suggestions_list.insert('end', label)
            ids = [s.id for s in suggestions]
            if self._chosen_suggestion in ids:
                self._suggestions_list.selection_set(ids.index(self._chosen_suggestion))
        queries = self.session.conversation.search_queries
        self._queries_label.configure(text=f"Searched: {', '.join(queries)}" if queries else "")
        self._refresh_preview(suggestions)

        self._status_label.configure(text=self.session.status_text)
        self._camera_label.configure(text=self.session.camera_text)
        notices = self.session.notices
        if notices:
            latest = notices[-1]
            color = self.COLORS['error'] if latest.kind == "error" else self.COLORS['warning']
            self._notice_label.configure(text=latest.message, fg=color)
        else:
            self._notice_label.configure(text="")

    # -- loop -------------------------------------------------------------------------

    async def run(self) -> None:
        """Pump Tk events and redraw the live view until the window closes."""
        self._running = True
        self.session.start()
        try:
            while self._running:
                self._redraw()
                self._refresh_panels()
                self.root.update()
                await asyncio.sleep(self.frame_delay)
        except tk.TclError as e:
            logger.info(f"Window closed: {e}")
        finally:
            for task in list(self._tasks):
                task.cancel()
            self.session.registry.remove_listener(self._on_registry_changed)
            self.session.close()
            try:
                self.root.destroy()
            except tk.TclError:
                pass

    def close(self):
        self._running = False
