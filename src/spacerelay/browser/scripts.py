"""JavaScript snippets evaluated in the room page.

Every snippet is an arrow function so that ``page.evaluate(SCRIPT, arg)``
receives its argument directly.
"""

from __future__ import annotations

# Playback signal: returns {media, playing, paused} counts for <audio>/<video>.
MEDIA_STATE_JS = """
() => {
  const els = Array.from(document.querySelectorAll('audio, video'));
  return {
    media: els.length,
    playing: els.filter(e => !e.paused && !e.ended && e.readyState > 2).length,
    paused: els.filter(e => e.paused).length,
  };
}
"""

# Interactive elements whose text or aria-label contains one of the phrases,
# with their visible area. Visible elements only.
TEXT_CANDIDATES_JS = """
(phrases) => {
  const wanted = phrases.map(p => p.toLowerCase());
  const nodes = Array.from(document.querySelectorAll(
    'button, a, [role="button"], [tabindex], div[aria-label], span'));
  const out = [];
  nodes.forEach((el, index) => {
    const label = ((el.innerText || '') + ' ' + (el.getAttribute('aria-label') || '')).trim();
    const lower = label.toLowerCase();
    const phrase = wanted.find(p => lower.includes(p));
    if (!phrase) return;
    const r = el.getBoundingClientRect();
    const style = window.getComputedStyle(el);
    if (r.width <= 0 || r.height <= 0 || style.visibility === 'hidden' || style.display === 'none') return;
    out.push({index, text: label.slice(0, 80), phrase,
              x: r.x + r.width / 2, y: r.y + r.height / 2, area: r.width * r.height});
  });
  return out;
}
"""

# The single largest visible interactive element, or null.
LARGEST_INTERACTIVE_JS = """
() => {
  const nodes = Array.from(document.querySelectorAll('button, [role="button"], a[href]'));
  let best = null;
  for (const el of nodes) {
    const r = el.getBoundingClientRect();
    const style = window.getComputedStyle(el);
    if (r.width <= 0 || r.height <= 0 || style.visibility === 'hidden' || style.display === 'none') continue;
    const area = r.width * r.height;
    if (!best || area > best.area) {
      best = {text: (el.innerText || el.getAttribute('aria-label') || '').slice(0, 80),
              x: r.x + r.width / 2, y: r.y + r.height / 2, area};
    }
  }
  return best;
}
"""

# Unmute the room and start paused media. Returns element counts.
UNMUTE_AND_PLAY_JS = """
(muteSelectors) => {
  for (const sel of muteSelectors) {
    const btn = document.querySelector(sel);
    if (btn && (btn.getAttribute('aria-label') || '').includes('Unmute')) { btn.click(); break; }
  }
  const els = Array.from(document.querySelectorAll('audio, video'));
  els.forEach(el => {
    el.muted = false;
    el.volume = 1.0;
    if (el.paused) { const p = el.play(); if (p) p.catch(() => {}); }
  });
  return {media: els.length};
}
"""

AUDIO_CONTEXT_AVAILABLE_JS = """
() => typeof AudioContext !== 'undefined' || typeof webkitAudioContext !== 'undefined'
"""

# Installs window.__spacerelay: an AudioContext at the requested rate, every
# media element tapped into a mono ScriptProcessor, float buffers pushed into
# a queue capped at maxDepth (oldest dropped).
GRAPH_INSTALL_JS = """
({sampleRate, bufferSize, maxDepth}) => {
  if (window.__spacerelay) {
    window.__spacerelay.recording = true;
    return {installed: true, sources: window.__spacerelay.sources.size, reused: true};
  }
  const Ctx = window.AudioContext || window.webkitAudioContext;
  if (!Ctx) return {installed: false, reason: 'AudioContext unavailable'};
  const ctx = new Ctx({sampleRate});
  const processor = ctx.createScriptProcessor(bufferSize, 2, 1);
  const state = {ctx, processor, queue: [], dropped: 0, recording: true, sources: new Set(), maxDepth};

  processor.onaudioprocess = (ev) => {
    if (!state.recording) return;
    const input = ev.inputBuffer;
    const n = input.length;
    const mono = new Array(n).fill(0);
    for (let c = 0; c < input.numberOfChannels; c++) {
      const data = input.getChannelData(c);
      for (let i = 0; i < n; i++) mono[i] += data[i] / input.numberOfChannels;
    }
    state.queue.push(mono);
    while (state.queue.length > state.maxDepth) { state.queue.shift(); state.dropped++; }
  };
  processor.connect(ctx.destination);

  state.attach = () => {
    document.querySelectorAll('audio, video').forEach(el => {
      if (state.sources.has(el)) return;
      try {
        const src = ctx.createMediaElementSource(el);
        src.connect(processor);
        src.connect(ctx.destination);
        state.sources.add(el);
      } catch (e) {
        console.warn('spacerelay: cannot tap media element', e);
      }
    });
    return state.sources.size;
  };
  state.attach();
  if (ctx.state === 'suspended') ctx.resume();
  window.__spacerelay = state;
  return {installed: true, sources: state.sources.size, reused: false};
}
"""

# Drains queued buffers and attaches newly appeared media elements.
GRAPH_DRAIN_JS = """
() => {
  const s = window.__spacerelay;
  if (!s) return {buffers: [], dropped: 0, sources: 0, installed: false};
  const sources = s.attach();
  const buffers = s.queue.splice(0, s.queue.length);
  const dropped = s.dropped;
  s.dropped = 0;
  return {buffers, dropped, sources, installed: true};
}
"""

GRAPH_STOP_JS = """
() => {
  const s = window.__spacerelay;
  if (!s) return false;
  s.recording = false;
  s.queue.length = 0;
  try { s.processor.disconnect(); } catch (e) {}
  try { s.ctx.close(); } catch (e) {}
  delete window.__spacerelay;
  return true;
}
"""

# Listing extraction for the discovery surface. Returns raw entries.
LISTING_ENTRIES_JS = """
(cardSelectors) => {
  const seen = new Set();
  const cards = [];
  for (const sel of cardSelectors) {
    document.querySelectorAll(sel).forEach(el => { if (!seen.has(el)) { seen.add(el); cards.push(el); } });
    if (cards.length) break;
  }
  const text = (el, sels) => {
    for (const s of sels) { const n = el.querySelector(s); if (n && n.textContent.trim()) return n.textContent.trim(); }
    return '';
  };
  return cards.map(card => {
    const link = card.matches('a[href*="/i/spaces/"]') ? card : card.querySelector('a[href*="/i/spaces/"]');
    return {
      url: link ? link.href : '',
      title: text(card, ['.space-title', 'h3', 'h4', '.title']),
      host: text(card, ['.space-host', '.host', '.username']),
      listeners: text(card, ['.space-listeners', '.listeners', '.count']),
      status: text(card, ['.space-status', '.status', '.state']),
    };
  });
}
"""
