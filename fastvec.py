"""fastvec — fastText word vectors and text classification in pure Python.

Implements the three fastText training modes with:
- Character n-gram (subword) and word n-gram features hashed into buckets
- Hierarchical softmax, negative sampling or full softmax losses
- Lock-free (Hogwild) SGD over worker threads running ``nogil`` kernels
- Product quantization of the embedding matrices (``.ftz`` models)
- The fastText binary model format (version 12)

Training models::

    cbow  Continuous bag of words  — context subwords predict the centre word
    sg    Skip-gram                — centre word subwords predict each context word
    sup   Supervised               — words + word n-grams predict a label

::

    model = FastText.train("train.txt", model="sup", epoch=25, lr=0.5)
    model.test("valid.txt")                    # → (N, P@1, R@1)
    model.predict("the food was great")        # → [("__label__pos", 0.92)]
    model.quantize(cutoff=100_000, retrain=True)
    model.save("model.ftz")

    vectors = FastText.train("corpus.txt", model="sg", dim=100)
    vectors.nn("king", k=5)                    # → [(0.83, "queen"), ...]
    vectors.analogies("man", "king", "woman")  # → [(0.79, "queen"), ...]

Requires only **numpy** and **numba**. The corpus is memory-mapped and
retokenised by the workers on every pass, so it is never copied into RAM.
"""

from __future__ import annotations

import argparse
import heapq
import math
import os
import struct
import sys
import tempfile
import time
from concurrent.futures import ThreadPoolExecutor, wait, FIRST_EXCEPTION
from dataclasses import dataclass, fields, replace
from typing import Iterable, Iterator

import numpy as np
from numba import njit


FASTTEXT_FILEFORMAT_MAGIC = 793712314
FASTTEXT_VERSION = 12

EOS = "</s>"
BOW = "<"
EOW = ">"
MAX_LINE_SIZE = 1024

ENTRY_WORD = 0
ENTRY_LABEL = 1

MODEL_CBOW, MODEL_SG, MODEL_SUP = 1, 2, 3
LOSS_HS, LOSS_NS, LOSS_SOFTMAX = 1, 2, 3
MODEL_IDS = {"cbow": MODEL_CBOW, "sg": MODEL_SG, "sup": MODEL_SUP}
LOSS_IDS = {"hs": LOSS_HS, "ns": LOSS_NS, "softmax": LOSS_SOFTMAX}

SIGMOID_TABLE_SIZE = 512
MAX_SIGMOID = 8
LOG_TABLE_SIZE = 512
NEGATIVE_TABLE_SIZE = 10_000_000

KSUB = 256
MAX_POINTS_PER_CLUSTER = 256
MAX_POINTS = KSUB * MAX_POINTS_PER_CLUSTER
PQ_NITER = 25
PQ_SEED = 1234
PQ_EPS = 1e-7

_SIGMOID_TABLE = (1.0 / (1.0 + np.exp(
    -(np.arange(SIGMOID_TABLE_SIZE + 1) * 2.0 * MAX_SIGMOID
      / SIGMOID_TABLE_SIZE - MAX_SIGMOID)))).astype(np.float32)
_LOG_TABLE = np.log(
    (np.arange(LOG_TABLE_SIZE + 1) + 1e-5) / LOG_TABLE_SIZE
).astype(np.float32)


# ── public helpers ────────────────────────────────────────────────────────────

def iter_lines(path: str) -> Iterator[list[str]]:
    """Yield tokenized lines from a text file."""
    with open(path, encoding="utf-8", errors="surrogateescape") as f:
        for line in f:
            tokens = line.split()
            if tokens:
                yield tokens


def _to_bytes(text: str) -> bytes:
    return text.encode("utf-8", "surrogateescape")


def _to_str(data: bytes) -> str:
    return data.decode("utf-8", "surrogateescape")


def _std_log(x):
    return math.log(x + 1e-5)


# ── deterministic hash (matches C++ fasttext) ────────────────────────────────


@njit(cache=True)
def _fnv1a(data, start, end):
    """FNV-1a 32-bit over data[start:end] with signed-char XOR.

    Returned as a non-negative int64 holding the uint32 value.
    """
    h = np.int64(2166136261)
    for i in range(start, end):
        b = np.int64(data[i])
        if b >= 128:
            b -= 256
        h = (((h ^ b) & 0xFFFFFFFF) * 16777619) & 0xFFFFFFFF
    return h


@njit(cache=True)
def _signed32(h):
    if h >= 2147483648:
        return h - 4294967296
    return h


def fnv1a(text: str) -> int:
    """32-bit FNV-1a hash of *text* as fastText computes it."""
    data = np.frombuffer(_to_bytes(text), dtype=np.uint8)
    return int(_fnv1a(data, 0, len(data)))


# ── minstd generator (std::minstd_rand) ──────────────────────────────────────


@njit(cache=True, nogil=True)
def _seed(seed):
    s = np.int64(abs(seed) % 2147483647)
    if s == 0:
        s = np.int64(1)
    return s


@njit(cache=True, nogil=True)
def _next_rand(state):
    return (state * np.int64(48271)) % np.int64(2147483647)


@njit(cache=True, nogil=True)
def _uniform(state):
    return (state - 1) / 2147483646.0


@njit(cache=True, nogil=True)
def _reserve(arr, n, extra):
    """Return *arr*, or a larger copy of it when n + extra does not fit."""
    if n + extra <= len(arr):
        return arr
    cap = max(len(arr) * 2, n + extra, 16)
    grown = np.empty(cap, dtype=arr.dtype)
    grown[:n] = arr[:n]
    return grown


# ── tokeniser ────────────────────────────────────────────────────────────────
#
# Tokens are split on ' ', '\t', '\r', '\v', '\f' and '\0'.  Every '\n'
# yields the end-of-sentence token </s>.


@njit(cache=True, nogil=True)
def _is_space(b):
    return b == 32 or b == 9 or b == 13 or b == 11 or b == 12 or b == 0


@njit(cache=True, nogil=True)
def _read_token(buf, buf_len, pos):
    """Next token at or after *pos*. Returns (kind, start, end, pos).

    kind: 0 = end of buffer, 1 = word, 2 = end of sentence.
    """
    pos = np.int64(pos)
    while pos < buf_len and _is_space(buf[pos]):
        pos += 1
    if pos >= buf_len:
        return 0, pos, pos, pos
    if buf[pos] == 10:
        return 2, pos, pos + 1, pos + 1
    start = pos
    while pos < buf_len and buf[pos] != 10 and not _is_space(buf[pos]):
        pos += 1
    return 1, start, pos, pos


@njit(cache=True, nogil=True)
def _has_prefix(buf, start, end, prefix):
    n = len(prefix)
    if end - start < n:
        return False
    for k in range(n):
        if buf[start + k] != prefix[k]:
            return False
    return True


# ── mmap text pipeline ────────────────────────────────────────────────────────
#
# Operates directly on a memory-mapped text file (uint8 bytes):
#   Pass 1: _vocab_scan      — count tokens into a growable hash table
#   Pass 2: Dictionary.init  — filter, sort, assign final ids, subwords
#   Train:  _train_thread    — every worker retokenises its shard inline


@njit(cache=True)
def _vocab_scan(buf, buf_len, table, ent_hash, ent_start, ent_len, ent_count):
    """Pass 1: scan mmap bytes → entries in order of first occurrence.

    The end-of-sentence entry has ent_len == -1 and is not in *table*.
    Returns (n_unique, n_tokens, eos_index, status).
    status: 0 = success, -1 = table full (caller should grow & retry).
    """
    mask = np.int64(len(table) - 1)
    capacity = len(ent_hash)
    n_unique = np.int64(0)
    n_tokens = np.int64(0)
    eos_index = np.int64(-1)
    pos = np.int64(0)

    while True:
        kind, s, e, pos = _read_token(buf, buf_len, pos)
        if kind == 0:
            break
        n_tokens += 1
        if kind == 2:
            if eos_index < 0:
                if n_unique >= capacity:
                    return n_unique, n_tokens, eos_index, -1
                eos_index = n_unique
                ent_hash[n_unique] = 0
                ent_start[n_unique] = -1
                ent_len[n_unique] = -1
                ent_count[n_unique] = 0
                n_unique += 1
            ent_count[eos_index] += 1
            continue

        h = _fnv1a(buf, s, e)
        tok_len = e - s
        slot = h & mask
        found = False
        while table[slot] >= 0:
            idx = table[slot]
            if ent_hash[idx] == h and ent_len[idx] == tok_len:
                ref = ent_start[idx]
                match = True
                for k in range(tok_len):
                    if buf[s + k] != buf[ref + k]:
                        match = False
                        break
                if match:
                    ent_count[idx] += 1
                    found = True
                    break
            slot = (slot + 1) & mask
        if found:
            continue

        if n_unique >= capacity:
            return n_unique, n_tokens, eos_index, -1
        table[slot] = n_unique
        ent_hash[n_unique] = h
        ent_start[n_unique] = s
        ent_len[n_unique] = tok_len
        ent_count[n_unique] = 1
        n_unique += 1

    return n_unique, n_tokens, eos_index, 0


@njit(cache=True)
def _build_lookup(word_hash, table_size):
    """Open-addressed id table over the final entries (linear probing)."""
    table = np.full(table_size, -1, dtype=np.int32)
    mask = table_size - 1
    for wid in range(len(word_hash)):
        slot = word_hash[wid] & mask
        while table[slot] >= 0:
            slot = (slot + 1) & mask
        table[slot] = wid
    return table


@njit(cache=True, nogil=True)
def _find(data, start, end, h, word_bytes, word_start, word_len, table):
    """Entry id of data[start:end] (hash *h*), or -1 when unknown."""
    mask = len(table) - 1
    slot = h & mask
    n = end - start
    while table[slot] >= 0:
        wid = np.int64(table[slot])
        if word_len[wid] == n:
            ref = word_start[wid]
            match = True
            for k in range(n):
                if data[start + k] != word_bytes[ref + k]:
                    match = False
                    break
            if match:
                return wid
        slot = (slot + 1) & mask
    return np.int64(-1)


# ── subwords ─────────────────────────────────────────────────────────────────


@njit(cache=True, nogil=True)
def _push_hash(h, nwords, prune_map, out, n):
    if len(prune_map) > 0:
        h = np.int64(prune_map[h])
        if h < 0:
            return out, n
    out = _reserve(out, n, 1)
    out[n] = nwords + h
    return out, n + 1


@njit(cache=True, nogil=True)
def _char_ngrams(w, n_w, minn, maxn, bucket, nwords, prune_map, out, n):
    """Append the char n-gram ids of the bracketed word w[:n_w] to out[n:].

    n-grams are taken over UTF-8 code points; single characters touching
    a boundary marker are skipped.
    """
    for i in range(n_w):
        if (w[i] & 0xC0) == 0x80:
            continue
        j = i
        k = 1
        while j < n_w and k <= maxn:
            j += 1
            while j < n_w and (w[j] & 0xC0) == 0x80:
                j += 1
            if k >= minn and not (k == 1 and (i == 0 or j == n_w)):
                h = _fnv1a(w, i, j) % bucket
                out, n = _push_hash(h, nwords, prune_map, out, n)
            k += 1
    return out, n


@njit(cache=True, nogil=True)
def _bracket(data, start, end, scratch):
    """Copy '<' + data[start:end] + '>' into scratch. Returns (scratch, n)."""
    n = end - start + 2
    scratch = _reserve(scratch, 0, n)
    scratch[0] = 60
    for k in range(end - start):
        scratch[k + 1] = data[start + k]
    scratch[n - 1] = 62
    return scratch, n


@njit(cache=True)
def _init_subwords(word_bytes, word_start, word_len, nwords, eos_id,
                   minn, maxn, bucket, prune_map):
    """CSR subword table: row *wid* holds [wid] + its char n-gram ids."""
    offsets = np.zeros(nwords + 1, dtype=np.int64)
    ids = np.empty(max(nwords * 4, 16), dtype=np.int64)
    scratch = np.empty(64, dtype=np.uint8)
    n = np.int64(0)
    for wid in range(nwords):
        ids = _reserve(ids, n, 1)
        ids[n] = wid
        n += 1
        if wid != eos_id and maxn > 0 and bucket > 0:
            s = word_start[wid]
            scratch, n_w = _bracket(word_bytes, s, s + word_len[wid], scratch)
            ids, n = _char_ngrams(scratch, n_w, minn, maxn, bucket,
                                  nwords, prune_map, ids, n)
        offsets[wid + 1] = n
    return offsets, ids[:n].copy()


@njit(cache=True, nogil=True)
def _word_ngrams(hashes, nh, word_ngrams, bucket, nwords, prune_map, out, n):
    """Append word n-gram ids built from the token hashes to out[n:]."""
    for i in range(nh):
        h = np.uint64(hashes[i])
        for j in range(i + 1, min(nh, i + word_ngrams)):
            h = h * np.uint64(116049371) + np.uint64(hashes[j])
            out, n = _push_hash(np.int64(h % np.uint64(bucket)),
                                nwords, prune_map, out, n)
    return out, n


# ── line readers (shared by training and Dictionary.get_line) ────────────────
#
# dic = (word_bytes, word_start, word_len, table, types,
#        sub_offsets, sub_ids, prune_map, label_prefix)


@njit(cache=True, nogil=True)
def _unsupervised_line(buf, buf_len, pos, dic, pdiscard, eos_id, state,
                       words):
    """Read known word ids up to </s>, down-sampled, at most MAX_LINE_SIZE.

    Returns (words, n, ntokens, pos, state).
    """
    word_bytes, word_start, word_len, table, types = (
        dic[0], dic[1], dic[2], dic[3], dic[4])
    if pos >= buf_len:
        pos = np.int64(0)
    n = np.int64(0)
    ntokens = np.int64(0)
    while True:
        kind, s, e, pos = _read_token(buf, buf_len, pos)
        if kind == 0:
            break
        if kind == 2:
            wid = np.int64(eos_id)
        else:
            wid = _find(buf, s, e, _fnv1a(buf, s, e),
                        word_bytes, word_start, word_len, table)
        if wid < 0:
            if kind == 2:
                break
            continue
        ntokens += 1
        if types[wid] == ENTRY_WORD:
            state = _next_rand(state)
            if _uniform(state) <= pdiscard[wid]:
                words = _reserve(words, n, 1)
                words[n] = wid
                n += 1
        if ntokens > MAX_LINE_SIZE or kind == 2:
            break
    return words, n, ntokens, pos, state


@njit(cache=True, nogil=True)
def _supervised_line(buf, buf_len, pos, dic, nwords, eos_id, eos_hash,
                     minn, maxn, bucket, word_ngrams,
                     words, labels, hashes, scratch):
    """Read one labelled line: input ids (subwords + word n-grams) and labels.

    Returns (words, n, labels, nl, hashes, scratch, ntokens, pos).
    """
    word_bytes, word_start, word_len, table, types = (
        dic[0], dic[1], dic[2], dic[3], dic[4])
    sub_offsets, sub_ids, prune_map, label_prefix = (
        dic[5], dic[6], dic[7], dic[8])
    if pos >= buf_len:
        pos = np.int64(0)
    n = np.int64(0)
    nl = np.int64(0)
    nh = np.int64(0)
    ntokens = np.int64(0)
    while True:
        kind, s, e, pos = _read_token(buf, buf_len, pos)
        if kind == 0:
            break
        if kind == 2:
            h = np.int64(eos_hash)
            wid = np.int64(eos_id)
            is_label = False
        else:
            h = _fnv1a(buf, s, e)
            wid = _find(buf, s, e, h, word_bytes, word_start, word_len, table)
            if wid >= 0:
                is_label = types[wid] == ENTRY_LABEL
            else:
                is_label = _has_prefix(buf, s, e, label_prefix)
        ntokens += 1
        if not is_label:
            if wid >= 0:
                for p in range(sub_offsets[wid], sub_offsets[wid + 1]):
                    words = _reserve(words, n, 1)
                    words[n] = sub_ids[p]
                    n += 1
            elif kind == 1 and maxn > 0 and bucket > 0:
                scratch, n_w = _bracket(buf, s, e, scratch)
                words, n = _char_ngrams(scratch, n_w, minn, maxn, bucket,
                                        nwords, prune_map, words, n)
            hashes = _reserve(hashes, nh, 1)
            hashes[nh] = _signed32(h)
            nh += 1
        elif wid >= 0:
            labels = _reserve(labels, nl, 1)
            labels[nl] = wid - nwords
            nl += 1
        if kind == 2:
            break
    if word_ngrams > 1 and bucket > 0:
        words, n = _word_ngrams(hashes, nh, word_ngrams, bucket, nwords,
                                prune_map, words, n)
    return words, n, labels, nl, hashes, scratch, ntokens, pos


# ── hierarchical softmax tree ────────────────────────────────────────────────


@njit(cache=True)
def _huffman(counts):
    """Greedy Huffman merge over counts sorted by descending frequency.

    Returns (left, right, parent, binary, offsets, nodes, codes) where
    offsets/nodes/codes are the CSR root-to-leaf paths of every leaf and
    nodes holds output rows (internal node id - osz).
    """
    osz = len(counts)
    size = max(2 * osz - 1, 1)
    count = np.full(size, np.int64(1e15), dtype=np.int64)
    left = np.full(size, -1, dtype=np.int64)
    right = np.full(size, -1, dtype=np.int64)
    parent = np.full(size, -1, dtype=np.int64)
    binary = np.zeros(size, dtype=np.uint8)
    for i in range(osz):
        count[i] = counts[i]
    leaf = osz - 1
    node = osz
    for i in range(osz, 2 * osz - 1):
        mini0 = np.int64(0)
        mini1 = np.int64(0)
        for j in range(2):
            if leaf >= 0 and count[leaf] < count[node]:
                pick = leaf
                leaf -= 1
            else:
                pick = node
                node += 1
            if j == 0:
                mini0 = pick
            else:
                mini1 = pick
        left[i] = mini0
        right[i] = mini1
        count[i] = count[mini0] + count[mini1]
        parent[mini0] = i
        parent[mini1] = i
        binary[mini1] = 1

    offsets = np.zeros(osz + 1, dtype=np.int64)
    for i in range(osz):
        depth = 0
        j = i
        while parent[j] != -1:
            depth += 1
            j = parent[j]
        offsets[i + 1] = offsets[i] + depth
    nodes = np.empty(offsets[osz], dtype=np.int64)
    codes = np.empty(offsets[osz], dtype=np.uint8)
    for i in range(osz):
        p = offsets[i + 1] - 1
        j = i
        while parent[j] != -1:
            nodes[p] = parent[j] - osz
            codes[p] = binary[j]
            p -= 1
            j = parent[j]
    return left, right, parent, binary, offsets, nodes, codes


# ── training step ────────────────────────────────────────────────────────────


@njit(cache=True, nogil=True)
def _sigmoid(x):
    if x < -MAX_SIGMOID:
        return 0.0
    if x > MAX_SIGMOID:
        return 1.0
    i = int((x + MAX_SIGMOID) * SIGMOID_TABLE_SIZE / MAX_SIGMOID / 2)
    return np.float64(_SIGMOID_TABLE[i])


@njit(cache=True, nogil=True)
def _table_log(x):
    if x > 1.0:
        return 0.0
    i = int(x * LOG_TABLE_SIZE)
    return np.float64(_LOG_TABLE[i])


@njit(fastmath=True, cache=True, nogil=True)
def _binary_logistic(wo, row, label, lr, hidden, grad):
    """One sigmoid unit: accumulate into grad, update wo[row]. Returns loss."""
    dim = hidden.shape[0]
    s = np.float32(0.0)
    for d in range(dim):
        s += wo[row, d] * hidden[d]
    score = _sigmoid(s)
    alpha = np.float32(lr * (label - score))
    for d in range(dim):
        grad[d] += alpha * wo[row, d]
        wo[row, d] += alpha * hidden[d]
    if label > 0.5:
        return -_table_log(score)
    return -_table_log(1.0 - score)


@njit(cache=True, nogil=True)
def _get_negative(negatives, target, state):
    """Draw a negative from the table, redrawing while it equals *target*."""
    while True:
        state = _next_rand(state)
        neg = negatives[state % len(negatives)]
        if neg != target:
            return neg, state


@njit(fastmath=True, cache=True, nogil=True)
def _update(wi, wo, inp, n_inp, target, lr, model, loss, neg, negatives,
            path_offsets, path_nodes, path_codes, hidden, grad, output,
            state):
    """One SGD step of the bag inp[:n_inp] towards *target*.

    Returns (loss, state, counted); an empty bag is skipped.
    """
    if n_inp == 0:
        return 0.0, state, False
    dim = wi.shape[1]
    for d in range(dim):
        hidden[d] = 0.0
        grad[d] = 0.0
    for k in range(n_inp):
        row = inp[k]
        for d in range(dim):
            hidden[d] += wi[row, d]
    inv = np.float32(1.0 / n_inp)
    for d in range(dim):
        hidden[d] *= inv

    total = 0.0
    if loss == LOSS_NS:
        total += _binary_logistic(wo, target, 1.0, lr, hidden, grad)
        for _ in range(neg):
            ng, state = _get_negative(negatives, target, state)
            total += _binary_logistic(wo, ng, 0.0, lr, hidden, grad)
    elif loss == LOSS_HS:
        for p in range(path_offsets[target], path_offsets[target + 1]):
            total += _binary_logistic(wo, path_nodes[p],
                                      np.float64(path_codes[p]),
                                      lr, hidden, grad)
    else:
        osz = wo.shape[0]
        mx = -np.inf
        for i in range(osz):
            s = np.float32(0.0)
            for d in range(dim):
                s += wo[i, d] * hidden[d]
            output[i] = s
            if s > mx:
                mx = s
        z = 0.0
        for i in range(osz):
            output[i] = np.exp(output[i] - mx)
            z += output[i]
        for i in range(osz):
            output[i] /= z
        for i in range(osz):
            label = 1.0 if i == target else 0.0
            alpha = np.float32(lr * (label - output[i]))
            for d in range(dim):
                grad[d] += alpha * wo[i, d]
                wo[i, d] += alpha * hidden[d]
        total = -_table_log(output[target])

    if model == MODEL_SUP:
        for d in range(dim):
            grad[d] *= inv
    for k in range(n_inp):
        row = inp[k]
        for d in range(dim):
            wi[row, d] += grad[d]
    return total, state, True


# ── worker ───────────────────────────────────────────────────────────────────


@njit(cache=True, nogil=True)
def _shard_start(buf, buf_len, tid, n_threads):
    """First line start at or after byte tid * buf_len / n_threads."""
    pos = np.int64(tid * buf_len // n_threads)
    if pos == 0:
        return pos
    while pos < buf_len and buf[pos - 1] != 10:
        pos += 1
    if pos >= buf_len:
        return np.int64(0)
    return pos


@njit(fastmath=True, cache=True, nogil=True)
def _train_thread(tid, n_threads, buf, buf_len, dic, nwords, eos_id,
                  eos_hash, pdiscard, model, loss, ws, neg, word_ngrams,
                  minn, maxn, bucket, wi, wo, negatives, path_offsets,
                  path_nodes, path_codes, lr0, total, lr_update_rate, seed,
                  progress, losses, examples, abort):
    """One Hogwild worker: SGD over shard *tid* until *total* tokens are done.

    wi / wo are shared with every other worker and written without any
    lock, so concurrent updates of one row may overwrite each other.  Only
    progress[tid], losses[tid] and examples[tid] are written by this worker;
    the global token count is the sum over all slots and never decreases.
    The learning rate decays linearly with that sum.  The worker returns
    early once abort[0] is set, always between two complete updates.
    """
    sub_offsets, sub_ids = dic[5], dic[6]
    dim = wi.shape[1]
    hidden = np.zeros(dim, dtype=np.float32)
    grad = np.zeros(dim, dtype=np.float32)
    output = np.zeros(wo.shape[0], dtype=np.float32)
    words = np.empty(256, dtype=np.int64)
    labels = np.empty(16, dtype=np.int64)
    hashes = np.empty(256, dtype=np.int64)
    scratch = np.empty(64, dtype=np.uint8)
    bow = np.empty(256, dtype=np.int64)
    state = _seed(seed + tid)
    pos = _shard_start(buf, buf_len, tid, n_threads)
    local = np.int64(0)

    while abort[0] == 0:
        done = np.int64(0)
        for t in range(n_threads):
            done += progress[t]
        if done >= total:
            break
        lr = lr0 * (1.0 - done / total)

        if model == MODEL_SUP:
            (words, n, labels, nl, hashes, scratch,
             ntok, pos) = _supervised_line(
                buf, buf_len, pos, dic, nwords, eos_id, eos_hash,
                minn, maxn, bucket, word_ngrams,
                words, labels, hashes, scratch)
            local += ntok
            if nl > 0 and n > 0:
                state = _next_rand(state)
                target = labels[state % nl]
                l, state, counted = _update(
                    wi, wo, words, n, target, lr, model, loss, neg,
                    negatives, path_offsets, path_nodes, path_codes,
                    hidden, grad, output, state)
                if counted:
                    losses[tid] += l
                    examples[tid] += 1
        else:
            words, n, ntok, pos, state = _unsupervised_line(
                buf, buf_len, pos, dic, pdiscard, eos_id, state, words)
            local += ntok
            for w in range(n):
                state = _next_rand(state)
                boundary = 1 + state % ws
                if model == MODEL_CBOW:
                    nb = np.int64(0)
                    for c in range(-boundary, boundary + 1):
                        if c != 0 and 0 <= w + c < n:
                            cw = words[w + c]
                            for p in range(sub_offsets[cw],
                                           sub_offsets[cw + 1]):
                                bow = _reserve(bow, nb, 1)
                                bow[nb] = sub_ids[p]
                                nb += 1
                    l, state, counted = _update(
                        wi, wo, bow, nb, words[w], lr, model, loss, neg,
                        negatives, path_offsets, path_nodes, path_codes,
                        hidden, grad, output, state)
                    if counted:
                        losses[tid] += l
                        examples[tid] += 1
                else:
                    cw = words[w]
                    a, b = sub_offsets[cw], sub_offsets[cw + 1]
                    for c in range(-boundary, boundary + 1):
                        if c != 0 and 0 <= w + c < n:
                            l, state, counted = _update(
                                wi, wo, sub_ids[a:b], b - a, words[w + c],
                                lr, model, loss, neg, negatives,
                                path_offsets, path_nodes, path_codes,
                                hidden, grad, output, state)
                            if counted:
                                losses[tid] += l
                                examples[tid] += 1

        if local > lr_update_rate:
            progress[tid] += local
            local = 0
    progress[tid] += local


# ── k-means assignment (product quantization) ────────────────────────────────


@njit(cache=True)
def _assign_centroids(x, centroids):
    """Nearest centroid (squared L2) per row of x; ties go to the lower id."""
    n, d = x.shape
    k = centroids.shape[0]
    codes = np.empty(n, dtype=np.int64)
    for i in range(n):
        best = np.inf
        best_c = 0
        for c in range(k):
            dist = 0.0
            for j in range(d):
                diff = x[i, j] - centroids[c, j]
                dist += diff * diff
            if dist < best:
                best = dist
                best_c = c
        codes[i] = best_c
    return codes


@njit(cache=True)
def _hash_words(word_bytes, word_start, word_len):
    out = np.empty(len(word_start), dtype=np.int64)
    for i in range(len(word_start)):
        out[i] = _fnv1a(word_bytes, word_start[i], word_start[i] + word_len[i])
    return out


# ── configuration ────────────────────────────────────────────────────────────


@dataclass
class Args:
    """Training hyper-parameters, stored in every model file."""

    model: str           = "sg"
    loss: str            = "ns"
    lr: float            = 0.05
    lr_update_rate: int  = 100
    dim: int             = 100
    ws: int              = 5
    epoch: int           = 5
    min_count: int       = 5
    min_count_label: int = 0
    neg: int             = 5
    word_ngrams: int     = 1
    bucket: int          = 2_000_000
    minn: int            = 3
    maxn: int            = 6
    thread: int          = 12
    t: float             = 1e-4
    label: str           = "__label__"
    verbose: int         = 2
    seed: int            = 0
    dsub: int            = 2
    qnorm: bool          = False
    qout: bool           = False
    cutoff: int          = 0
    retrain: bool        = False

    @classmethod
    def for_model(cls, model: str = "sg", **overrides) -> Args:
        """Defaults for *model*, then *overrides*, validated."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise ValueError(f"unknown argument(s): {', '.join(unknown)}")
        values = {}
        if model == "sup":
            values.update(loss="softmax", min_count=1, minn=0, maxn=0,
                          lr=0.1)
        values.update(overrides)
        args = cls(model=model, **values)
        if args.word_ngrams <= 1 and args.maxn == 0:
            args.bucket = 0
        args.validate()
        return args

    def validate(self):
        if self.model not in MODEL_IDS:
            raise ValueError(f"unknown model: {self.model!r}")
        if self.loss not in LOSS_IDS:
            raise ValueError(f"unknown loss: {self.loss!r}")
        for name in ("dim", "epoch", "thread", "ws", "word_ngrams",
                     "lr_update_rate"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be positive, "
                                 f"got {getattr(self, name)}")
        if self.lr <= 0:
            raise ValueError(f"lr must be positive, got {self.lr}")
        if self.bucket < 0:
            raise ValueError(f"bucket must be >= 0, got {self.bucket}")
        if self.minn < 0 or self.maxn < 0:
            raise ValueError("minn and maxn must be >= 0")
        if self.maxn > 0 and self.minn > self.maxn:
            raise ValueError(f"minn ({self.minn}) > maxn ({self.maxn})")
        if self.loss == "ns" and self.neg < 1:
            raise ValueError("negative sampling needs neg >= 1")
        if self.dsub < 1 or self.dsub > self.dim:
            raise ValueError(f"dsub must be in [1, dim={self.dim}], "
                             f"got {self.dsub}")

    def save(self, out):
        out.write(struct.pack(
            "<12id", self.dim, self.ws, self.epoch, self.min_count,
            self.neg, self.word_ngrams, LOSS_IDS[self.loss],
            MODEL_IDS[self.model], self.bucket, self.minn, self.maxn,
            self.lr_update_rate, self.t))

    @classmethod
    def load(cls, reader: _Reader) -> Args:
        (dim, ws, epoch, min_count, neg, word_ngrams, loss, model, bucket,
         minn, maxn, lr_update_rate, t) = reader.unpack("<12id")
        losses = {v: k for k, v in LOSS_IDS.items()}
        models = {v: k for k, v in MODEL_IDS.items()}
        if loss not in losses or model not in models:
            raise ValueError(f"corrupt model file: loss={loss} model={model}")
        return cls(model=models[model], loss=losses[loss], dim=dim, ws=ws,
                   epoch=epoch, min_count=min_count, neg=neg,
                   word_ngrams=word_ngrams, bucket=bucket, minn=minn,
                   maxn=maxn, lr_update_rate=lr_update_rate, t=t,
                   dsub=min(2, dim))


class _Reader:
    """Sequential little-endian reader over the bytes of a model file."""

    __slots__ = ("data", "pos")

    def __init__(self, data: bytes):
        self.data = data
        self.pos = 0

    def _take(self, size: int) -> int:
        start = self.pos
        if start + size > len(self.data):
            raise ValueError("truncated model file")
        self.pos += size
        return start

    def unpack(self, fmt: str) -> tuple:
        start = self._take(struct.calcsize(fmt))
        return struct.unpack_from(fmt, self.data, start)

    def array(self, dtype, count: int) -> np.ndarray:
        dtype = np.dtype(dtype)
        start = self._take(dtype.itemsize * count)
        return np.frombuffer(self.data, dtype, count, start).copy()

    def cstring(self) -> bytes:
        end = self.data.find(b"\0", self.pos)
        if end < 0:
            raise ValueError("truncated model file")
        s = self.data[self.pos:end]
        self.pos = end + 1
        return s


# ── vocabulary ───────────────────────────────────────────────────────────────


def _alloc_vocab_table(estimated_unique):
    """Probe table (power-of-2 size) + entry arrays filled up to 70%."""
    table_size = 1
    while table_size < max(estimated_unique * 4, 1 << 16):
        table_size <<= 1
    capacity = table_size * 7 // 10
    return (np.full(table_size, -1, np.int64),
            np.zeros(capacity, np.int64),      # ent_hash
            np.zeros(capacity, np.int64),      # ent_start
            np.zeros(capacity, np.int64),      # ent_len
            np.zeros(capacity, np.int64))      # ent_count


def _ngram_spans(w: bytes, minn: int, maxn: int) -> Iterator[tuple[int, int]]:
    """(start, end) byte spans of the char n-grams of bracketed word *w*."""
    n_w = len(w)
    for i in range(n_w):
        if (w[i] & 0xC0) == 0x80:
            continue
        j, k = i, 1
        while j < n_w and k <= maxn:
            j += 1
            while j < n_w and (w[j] & 0xC0) == 0x80:
                j += 1
            if k >= minn and not (k == 1 and (i == 0 or j == n_w)):
                yield i, j
            k += 1


class Dictionary:
    """Words (then labels) with counts, subword ids and the id lookup table.

    ::

        d = Dictionary(Args.for_model("sg", min_count=1))
        d.read_from_file("corpus.txt")
        d.get_id("king"), d.subwords("king")
    """

    def __init__(self, args: Args):
        self.args = args
        self.words: list[str] = []
        self.counts: list[int] = []
        self.types: list[int] = []
        self.ntokens = 0
        self.nwords = 0
        self.nlabels = 0
        self.pruneidx: dict[int, int] = {}
        self.pruneidx_size = -1
        self._index: dict[str, int] = {}
        self._tables = None
        self._pdiscard = np.zeros(0, np.float32)
        self._eos_id = -1

    @property
    def size(self) -> int:
        return len(self.words)

    # ── build ─────────────────────────────────────────────────────────────

    def read_from_file(self, path: str, verbose: int = 0):
        """Count every token of *path*, threshold and initialise."""
        if os.path.getsize(path) == 0:
            raise ValueError(f"{path}: empty corpus")
        buf = np.asarray(np.memmap(path, dtype=np.uint8, mode="r"))
        buf_len = np.int64(len(buf))

        estimated = min(int(buf_len) // 4, 4_000_000)
        while True:
            table, ent_hash, ent_start, ent_len, ent_count = (
                _alloc_vocab_table(estimated))
            n_unique, n_tokens, eos_index, status = _vocab_scan(
                buf, buf_len, table, ent_hash, ent_start, ent_len, ent_count)
            if status == 0:
                break
            estimated = int(n_unique) * 4
        del table

        prefix = _to_bytes(self.args.label)
        eos_raw = _to_bytes(EOS)
        eos_at = -1
        self.words, self.counts, self.types = [], [], []
        for i in range(int(n_unique)):
            if i == eos_index:
                raw = eos_raw
            else:
                s = int(ent_start[i])
                raw = bytes(buf[s:s + int(ent_len[i])])
            if raw == eos_raw:
                # a literal "</s>" token and the newlines share one entry
                if eos_at >= 0:
                    self.counts[eos_at] += int(ent_count[i])
                    continue
                eos_at = len(self.words)
            self.words.append(_to_str(raw))
            self.counts.append(int(ent_count[i]))
            self.types.append(ENTRY_LABEL if raw.startswith(prefix)
                              else ENTRY_WORD)
        self.ntokens = int(n_tokens)

        self.threshold(self.args.min_count, self.args.min_count_label)
        self.init()
        if verbose > 0:
            print(f"\rRead {self.ntokens // 1_000_000}M words", file=sys.stderr)
            print(f"Number of words:  {self.nwords}", file=sys.stderr)
            print(f"Number of labels: {self.nlabels}", file=sys.stderr)
        if self.nwords == 0:
            raise ValueError("Empty vocabulary. Try a smaller -minCount value.")

    def add(self, words: Iterable[str]):
        """Count *words* as corpus tokens (new entries are appended)."""
        prefix = self.args.label
        for w in words:
            self.ntokens += 1
            i = self._index.get(w)
            if i is None:
                self._index[w] = len(self.words)
                self.words.append(w)
                self.counts.append(1)
                self.types.append(ENTRY_LABEL if w.startswith(prefix)
                                  else ENTRY_WORD)
            else:
                self.counts[i] += 1

    def threshold(self, t: int, tl: int):
        """Drop entries under their min count; order words then labels by
        descending count, first-seen order breaking ties."""
        counts = np.asarray(self.counts, dtype=np.int64)
        types = np.asarray(self.types, dtype=np.int8)
        order = np.lexsort((-counts, types))
        limit = np.where(types == ENTRY_WORD, t, tl)
        order = order[counts[order] >= limit[order]]
        self.words = [self.words[i] for i in order]
        self.counts = [int(counts[i]) for i in order]
        self.types = [int(types[i]) for i in order]
        self._index = {w: i for i, w in enumerate(self.words)}

    def init(self):
        """Build the lookup table, discard probabilities and subwords."""
        args = self.args
        self.nwords = sum(1 for k in self.types if k == ENTRY_WORD)
        self.nlabels = len(self.types) - self.nwords

        data = [_to_bytes(w) for w in self.words]
        word_len = np.array([len(d) for d in data], dtype=np.int64)
        word_start = np.zeros(len(data), dtype=np.int64)
        if len(data) > 1:
            word_start[1:] = np.cumsum(word_len)[:-1]
        word_bytes = np.frombuffer(b"".join(data) or b"\0", dtype=np.uint8)
        word_hash = _hash_words(word_bytes, word_start, word_len)
        table_size = 16
        while table_size < 4 * max(len(data), 1):
            table_size <<= 1
        table = _build_lookup(word_hash, table_size)
        types = np.array(self.types, dtype=np.int8)

        counts = np.array(self.counts, dtype=np.float64)
        f = counts / max(self.ntokens, 1)
        with np.errstate(divide="ignore"):
            self._pdiscard = (np.sqrt(args.t / f) + args.t / f).astype(
                np.float32)

        if self.pruneidx_size >= 0:
            prune_map = np.full(max(args.bucket, 1), -1, dtype=np.int64)
            for k, v in self.pruneidx.items():
                prune_map[k] = v
        else:
            prune_map = np.zeros(0, dtype=np.int64)

        self._tables = (word_bytes, word_start, word_len, table, types,
                        None, None, prune_map,
                        np.frombuffer(_to_bytes(args.label), dtype=np.uint8))
        self._eos_id = self.get_id(EOS)
        sub_offsets, sub_ids = _init_subwords(
            word_bytes, word_start, word_len, self.nwords, self._eos_id,
            args.minn, args.maxn, args.bucket, prune_map)
        self._tables = self._tables[:5] + (sub_offsets, sub_ids) + \
            self._tables[7:]

    def kernel_tables(self) -> tuple:
        """The arrays the numba line readers and workers consume."""
        return self._tables

    @property
    def eos_id(self) -> int:
        return self._eos_id

    @property
    def eos_hash(self) -> int:
        return fnv1a(EOS)

    @property
    def pdiscard(self) -> np.ndarray:
        return self._pdiscard

    # ── lookup ────────────────────────────────────────────────────────────

    def get_id(self, word: str) -> int:
        """Entry id of *word*, or -1 when it is not in the dictionary."""
        data = np.frombuffer(_to_bytes(word), dtype=np.uint8)
        word_bytes, word_start, word_len, table = self._tables[:4]
        return int(_find(data, 0, len(data), _fnv1a(data, 0, len(data)),
                         word_bytes, word_start, word_len, table))

    def get_label(self, lid: int) -> str:
        if not 0 <= lid < self.nlabels:
            raise IndexError(f"label id {lid} out of range [0, {self.nlabels})")
        return self.words[self.nwords + lid]

    def get_counts(self, kind: int) -> np.ndarray:
        return np.array([c for c, k in zip(self.counts, self.types)
                         if k == kind], dtype=np.int64)

    def labels(self) -> list[str]:
        return self.words[self.nwords:]

    def subwords(self, word: str) -> np.ndarray:
        """Input-matrix rows of *word*: its own id (if known) + char n-grams."""
        i = self.get_id(word)
        sub_offsets, sub_ids = self._tables[5], self._tables[6]
        if 0 <= i < self.nwords:
            return sub_ids[sub_offsets[i]:sub_offsets[i + 1]].copy()
        args = self.args
        if word == EOS or args.maxn <= 0 or args.bucket <= 0:
            return np.zeros(0, dtype=np.int64)
        data = np.frombuffer(_to_bytes(word), dtype=np.uint8)
        scratch, n_w = _bracket(data, 0, len(data),
                                np.empty(64, dtype=np.uint8))
        out, n = _char_ngrams(scratch, n_w, args.minn, args.maxn,
                              args.bucket, self.nwords, self._tables[7],
                              np.empty(16, dtype=np.int64), 0)
        return out[:n].copy()

    def subword_strings(self, word: str) -> list[tuple[str, int]]:
        """[(substring, row)] for *word*; the word itself first when known."""
        out = []
        i = self.get_id(word)
        if 0 <= i < self.nwords:
            out.append((self.words[i], i))
        args = self.args
        if word == EOS or args.maxn <= 0 or args.bucket <= 0:
            return out
        w = _to_bytes(BOW + word + EOW)
        for s, e in _ngram_spans(w, args.minn, args.maxn):
            h = fnv1a(_to_str(w[s:e])) % args.bucket
            if self.pruneidx_size >= 0:
                if h not in self.pruneidx:
                    continue
                h = self.pruneidx[h]
            out.append((_to_str(w[s:e]), self.nwords + h))
        return out

    def get_line(self, text: str, state: int = 1
                 ) -> tuple[np.ndarray, np.ndarray]:
        """Encode the first line of *text* → (input ids, label ids).

        Supervised dictionaries return subword and word n-gram ids; the
        others return down-sampled word ids and no labels.
        """
        args = self.args
        buf = np.frombuffer(_to_bytes(text), dtype=np.uint8)
        buf_len = np.int64(len(buf))
        if args.model == "sup":
            words, n, labels, nl, *_ = _supervised_line(
                buf, buf_len, 0, self._tables, self.nwords, self._eos_id,
                self.eos_hash, args.minn, args.maxn, args.bucket,
                args.word_ngrams, np.empty(64, np.int64),
                np.empty(8, np.int64), np.empty(64, np.int64),
                np.empty(64, np.uint8))
            return words[:n].copy(), labels[:nl].copy()
        words, n, _, _, _ = _unsupervised_line(
            buf, buf_len, 0, self._tables, self._pdiscard, self._eos_id,
            _seed(state), np.empty(64, np.int64))
        return words[:n].copy(), np.zeros(0, dtype=np.int64)

    # ── pruning ───────────────────────────────────────────────────────────

    def is_pruned(self) -> bool:
        return self.pruneidx_size >= 0

    def prune(self, idx: np.ndarray) -> np.ndarray:
        """Keep word ids and n-gram rows of *idx*, remap n-grams compactly.

        Returns the row order of the pruned input matrix (kept word ids
        ascending, then the kept n-gram rows in *idx* order).
        """
        idx = np.asarray(idx, dtype=np.int64)
        words = np.sort(idx[idx < self.nwords])
        ngrams = idx[idx >= self.nwords]
        self.pruneidx = {int(ng) - self.nwords: j
                         for j, ng in enumerate(ngrams)}
        self.pruneidx_size = len(self.pruneidx)

        keep = set(int(w) for w in words)
        kept = [i for i in range(len(self.words))
                if self.types[i] == ENTRY_LABEL or i in keep]
        self.words = [self.words[i] for i in kept]
        self.counts = [self.counts[i] for i in kept]
        self.types = [self.types[i] for i in kept]
        self._index = {w: i for i, w in enumerate(self.words)}
        self.init()
        return np.concatenate([words, ngrams])

    # ── I/O ───────────────────────────────────────────────────────────────

    def save(self, out):
        out.write(struct.pack("<iiiqq", self.size, self.nwords, self.nlabels,
                              self.ntokens, self.pruneidx_size))
        for w, c, k in zip(self.words, self.counts, self.types):
            out.write(_to_bytes(w) + b"\0")
            out.write(struct.pack("<qb", c, k))
        for k, v in self.pruneidx.items():
            out.write(struct.pack("<ii", k, v))

    @classmethod
    def load(cls, reader: _Reader, args: Args) -> Dictionary:
        d = cls(args)
        size, nwords, nlabels, ntokens, pruneidx_size = reader.unpack("<iiiqq")
        for _ in range(size):
            d.words.append(_to_str(reader.cstring()))
            c, k = reader.unpack("<qb")
            d.counts.append(c)
            d.types.append(k)
        d.ntokens = ntokens
        d.pruneidx_size = pruneidx_size
        for _ in range(max(pruneidx_size, 0)):
            k, v = reader.unpack("<ii")
            d.pruneidx[k] = v
        d._index = {w: i for i, w in enumerate(d.words)}
        d.init()
        if d.nwords != nwords or d.nlabels != nlabels:
            raise ValueError("corrupt model file: inconsistent dictionary")
        return d


# ── hierarchical softmax tree ────────────────────────────────────────────────


class HuffmanTree:
    """Huffman tree over target counts (sorted by descending count).

    Leaves are targets 0..osz-1, internal nodes osz..2*osz-2, the root is
    the last node.  Each leaf path is stored root-to-leaf as output rows
    (node - osz) with codes (1 = right child).
    """

    __slots__ = ("osz", "left", "right", "parent", "binary",
                 "path_offsets", "path_nodes", "path_codes")

    def __init__(self, counts):
        counts = np.asarray(counts, dtype=np.int64)
        self.osz = len(counts)
        (self.left, self.right, self.parent, self.binary,
         self.path_offsets, self.path_nodes, self.path_codes) = _huffman(counts)

    @property
    def root(self) -> int:
        return 2 * self.osz - 2

    def is_leaf(self, node: int) -> bool:
        return self.left[node] == -1 and self.right[node] == -1

    def path(self, target: int) -> tuple[np.ndarray, np.ndarray]:
        a, b = self.path_offsets[target], self.path_offsets[target + 1]
        return self.path_nodes[a:b], self.path_codes[a:b]

    def code(self, target: int) -> str:
        return "".join(str(c) for c in self.path(target)[1])


# ── matrices ─────────────────────────────────────────────────────────────────
#
# Matrix and QMatrix share the read capability {rows, cols, dot_row,
# add_to_vector, multiply}; prediction and the query engine use only that.
# Training writes straight into Matrix.data from the worker kernels.


class Matrix:
    """Dense row-major float32 matrix (input or output embeddings)."""

    __slots__ = ("data",)

    def __init__(self, data: np.ndarray):
        self.data = np.ascontiguousarray(data, dtype=np.float32)

    @classmethod
    def zeros(cls, m: int, n: int) -> Matrix:
        return cls(np.zeros((m, n), dtype=np.float32))

    @classmethod
    def uniform(cls, m: int, n: int, bound: float, seed: int = 0) -> Matrix:
        """Rows drawn uniformly from [-bound, bound)."""
        data = np.random.default_rng(seed).random((m, n), dtype=np.float32)
        data *= np.float32(2 * bound)
        data -= np.float32(bound)
        return cls(data)

    @property
    def rows(self) -> int:
        return self.data.shape[0]

    @property
    def cols(self) -> int:
        return self.data.shape[1]

    def _check_row(self, i: int):
        if not 0 <= i < self.data.shape[0]:
            raise IndexError(f"row {i} out of range [0, {self.data.shape[0]})")

    def at(self, i: int, j: int) -> float:
        self._check_row(i)
        if not 0 <= j < self.data.shape[1]:
            raise IndexError(f"column {j} out of range "
                             f"[0, {self.data.shape[1]})")
        return float(self.data[i, j])

    def add_row(self, vec: np.ndarray, i: int, scale: float = 1.0):
        """row i += scale * vec"""
        self._check_row(i)
        self.data[i] += np.float32(scale) * vec

    def add_to_vector(self, vec: np.ndarray, i: int, scale: float = 1.0):
        """vec += scale * row i"""
        self._check_row(i)
        vec += np.float32(scale) * self.data[i]

    def dot_row(self, vec: np.ndarray, i: int) -> float:
        self._check_row(i)
        return float(np.dot(self.data[i], vec))

    def multiply(self, vec: np.ndarray) -> np.ndarray:
        """Every row · vec."""
        return self.data @ np.asarray(vec, dtype=np.float32)

    def l2_norm_rows(self) -> np.ndarray:
        return np.linalg.norm(self.data, axis=1)

    def save(self, out):
        out.write(struct.pack("<qq", *self.data.shape))
        out.write(self.data.tobytes())

    @classmethod
    def load(cls, reader: _Reader) -> Matrix:
        m, n = reader.unpack("<qq")
        return cls(reader.array(np.float32, m * n).reshape(m, n))


class ProductQuantizer:
    """8-bit product quantizer: *dim* split into sub-vectors of *dsub*.

    The last sub-vector takes the remainder when dsub does not divide dim.
    Centroids are stored flat, KSUB per sub-quantizer, as in fastText.
    """

    __slots__ = ("dim", "dsub", "nsubq", "lastdsub", "centroids", "rng")

    def __init__(self, dim: int, dsub: int):
        self.dim, self.dsub = dim, dsub
        self.nsubq = dim // dsub
        self.lastdsub = dim % dsub
        if self.lastdsub == 0:
            self.lastdsub = dsub
        else:
            self.nsubq += 1
        self.centroids = np.zeros(dim * KSUB, dtype=np.float32)
        self.rng = np.random.RandomState(PQ_SEED)

    def bounds(self, m: int) -> tuple[int, int]:
        start = m * self.dsub
        d = self.lastdsub if m == self.nsubq - 1 else self.dsub
        return start, start + d

    def book(self, m: int) -> np.ndarray:
        """(KSUB, d) view of the centroids of sub-quantizer *m*."""
        start, end = self.bounds(m)
        off = m * KSUB * self.dsub
        return self.centroids[off:off + KSUB * (end - start)].reshape(
            KSUB, end - start)

    def train(self, x: np.ndarray):
        n = x.shape[0]
        if n < KSUB:
            raise ValueError("Matrix too small for quantization, "
                             f"must have at least {KSUB} rows")
        perm = np.arange(n)
        n_points = min(n, MAX_POINTS)
        for m in range(self.nsubq):
            if n_points != n:
                self.rng.shuffle(perm)
            start, end = self.bounds(m)
            xslice = np.ascontiguousarray(
                x[perm[:n_points], start:end], dtype=np.float32)
            self._kmeans(xslice, self.book(m))

    def _kmeans(self, x: np.ndarray, c: np.ndarray):
        perm = np.arange(len(x))
        self.rng.shuffle(perm)
        c[:] = x[perm[:KSUB]]
        for _ in range(PQ_NITER):
            codes = _assign_centroids(x, c)
            self._mstep(x, c, codes)

    def _mstep(self, x: np.ndarray, c: np.ndarray, codes: np.ndarray):
        n, d = x.shape
        nelts = np.bincount(codes, minlength=KSUB)
        c[:] = 0.0
        np.add.at(c, codes, x)
        filled = nelts > 0
        c[filled] /= nelts[filled, None]

        # split a populated centroid into every empty one
        sign = (np.arange(d) % 2) * 2 - 1
        for k in np.flatnonzero(nelts == 0):
            m = 0
            while self.rng.uniform() * (n - KSUB) >= nelts[m] - 1:
                m = (m + 1) % KSUB
            c[k] = c[m]
            c[k] += sign * PQ_EPS
            c[m] -= sign * PQ_EPS
            nelts[k] = nelts[m] // 2
            nelts[m] -= nelts[k]

    def compute_codes(self, x: np.ndarray) -> np.ndarray:
        codes = np.empty((x.shape[0], self.nsubq), dtype=np.uint8)
        for m in range(self.nsubq):
            start, end = self.bounds(m)
            xs = np.ascontiguousarray(x[:, start:end], dtype=np.float32)
            codes[:, m] = _assign_centroids(xs, self.book(m))
        return codes

    def addcode(self, vec: np.ndarray, code: np.ndarray, alpha: float):
        for m in range(self.nsubq):
            start, end = self.bounds(m)
            vec[start:end] += np.float32(alpha) * self.book(m)[code[m]]

    def mulcode(self, vec: np.ndarray, code: np.ndarray, alpha: float) -> float:
        res = 0.0
        for m in range(self.nsubq):
            start, end = self.bounds(m)
            res += float(np.dot(vec[start:end], self.book(m)[code[m]]))
        return res * alpha

    def save(self, out):
        out.write(struct.pack("<iiii", self.dim, self.nsubq, self.dsub,
                              self.lastdsub))
        out.write(self.centroids.tobytes())

    @classmethod
    def load(cls, reader: _Reader) -> ProductQuantizer:
        dim, nsubq, dsub, lastdsub = reader.unpack("<iiii")
        pq = cls(dim, dsub)
        if pq.nsubq != nsubq or pq.lastdsub != lastdsub:
            raise ValueError("corrupt model file: product quantizer layout")
        pq.centroids = reader.array(np.float32, dim * KSUB)
        return pq


class QMatrix:
    """Product-quantized matrix: one byte per sub-vector of every row.

    With *qnorm* the rows are quantized after unit normalisation and the
    norms are quantized separately by a 1-d quantizer.
    """

    __slots__ = ("qnorm", "m", "n", "codes", "pq", "norm_codes", "npq")

    def __init__(self, qnorm: bool, m: int, n: int, codes: np.ndarray,
                 pq: ProductQuantizer, norm_codes: np.ndarray | None = None,
                 npq: ProductQuantizer | None = None):
        self.qnorm, self.m, self.n = qnorm, m, n
        self.codes, self.pq = codes, pq
        self.norm_codes, self.npq = norm_codes, npq

    @classmethod
    def quantize(cls, matrix: Matrix, dsub: int, qnorm: bool) -> QMatrix:
        data = matrix.data.copy()
        m, n = data.shape
        norm_codes = npq = None
        if qnorm:
            norms = np.linalg.norm(data, axis=1).astype(np.float32)
            nz = norms > 0
            data[nz] /= norms[nz, None]
            npq = ProductQuantizer(1, 1)
            npq.train(norms[:, None])
            norm_codes = npq.compute_codes(norms[:, None])[:, 0]
        pq = ProductQuantizer(n, dsub)
        pq.train(data)
        return cls(qnorm, m, n, pq.compute_codes(data), pq, norm_codes, npq)

    @property
    def rows(self) -> int:
        return self.m

    @property
    def cols(self) -> int:
        return self.n

    @property
    def codesize(self) -> int:
        return self.m * self.pq.nsubq

    def _check_row(self, i: int):
        if not 0 <= i < self.m:
            raise IndexError(f"row {i} out of range [0, {self.m})")

    def _norm(self, i: int) -> float:
        if not self.qnorm:
            return 1.0
        return float(self.npq.book(0)[self.norm_codes[i], 0])

    def dot_row(self, vec: np.ndarray, i: int) -> float:
        self._check_row(i)
        return self.pq.mulcode(vec, self.codes[i], self._norm(i))

    def add_to_vector(self, vec: np.ndarray, i: int, scale: float = 1.0):
        self._check_row(i)
        self.pq.addcode(vec, self.codes[i], scale * self._norm(i))

    def multiply(self, vec: np.ndarray) -> np.ndarray:
        """Every row · vec through per-sub-quantizer lookup tables."""
        vec = np.asarray(vec, dtype=np.float32)
        scores = np.zeros(self.m, dtype=np.float32)
        for q in range(self.pq.nsubq):
            start, end = self.pq.bounds(q)
            lut = self.pq.book(q) @ vec[start:end]
            scores += lut[self.codes[:, q]]
        if self.qnorm:
            scores *= self.npq.book(0)[self.norm_codes, 0]
        return scores

    def save(self, out):
        out.write(struct.pack("<?qqi", self.qnorm, self.m, self.n,
                              self.codesize))
        out.write(self.codes.tobytes())
        self.pq.save(out)
        if self.qnorm:
            out.write(self.norm_codes.tobytes())
            self.npq.save(out)

    @classmethod
    def load(cls, reader: _Reader) -> QMatrix:
        qnorm, m, n, codesize = reader.unpack("<?qqi")
        codes = reader.array(np.uint8, codesize)
        pq = ProductQuantizer.load(reader)
        if m * pq.nsubq != codesize:
            raise ValueError("corrupt model file: quantized code size")
        norm_codes = npq = None
        if qnorm:
            norm_codes = reader.array(np.uint8, m)
            npq = ProductQuantizer.load(reader)
        return cls(qnorm, m, n, codes.reshape(m, pq.nsubq), pq,
                   norm_codes, npq)


# ── model ────────────────────────────────────────────────────────────────────


def _sigmoid_exact(x: float) -> float:
    if x >= 0:
        return 1.0 / (1.0 + math.exp(-x))
    e = math.exp(x)
    return e / (1.0 + e)


def _negative_table(counts: np.ndarray, seed: int) -> np.ndarray:
    """Target ids repeated ∝ sqrt(count), shuffled."""
    if len(counts) < 2:
        raise ValueError("negative sampling needs at least 2 targets, "
                         f"got {len(counts)}")
    c = np.sqrt(counts.astype(np.float64))
    reps = np.ceil(c * NEGATIVE_TABLE_SIZE / c.sum()).astype(np.int64)
    table = np.repeat(np.arange(len(counts), dtype=np.int32), reps)
    np.random.default_rng(seed).shuffle(table)
    return table


class Model:
    """Input / output matrices plus the loss, for SGD steps and prediction.

    ::

        m = Model(wi, wo, args, target_counts)
        m.update([3, 17, 40], target=1, lr=0.1)
        m.predict([3, 17, 40], k=2)        # → [(1, 0.71), (0, 0.29)]
    """

    __slots__ = ("wi", "wo", "args", "osz", "tree", "_counts", "_negatives",
                 "_hidden", "_grad", "_output", "state")

    def __init__(self, wi, wo, args: Args, target_counts, seed: int = 0):
        self.wi, self.wo, self.args = wi, wo, args
        self.osz = wo.rows
        self._counts = np.asarray(target_counts, dtype=np.int64)
        self.tree = HuffmanTree(self._counts) if args.loss == "hs" else None
        self._negatives = None
        self._hidden = np.zeros(args.dim, dtype=np.float32)
        self._grad = np.zeros(args.dim, dtype=np.float32)
        self._output = np.zeros(self.osz, dtype=np.float32)
        self.state = int(_seed(seed))

    @property
    def negatives(self) -> np.ndarray:
        """Negative sampling table, built on first use."""
        if self._negatives is None:
            self._negatives = _negative_table(self._counts, self.args.seed)
        return self._negatives

    def tree_arrays(self) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        if self.tree is None:
            return (np.zeros(1, np.int64), np.zeros(0, np.int64),
                    np.zeros(0, np.uint8))
        t = self.tree
        return t.path_offsets, t.path_nodes, t.path_codes

    def _kernel_negatives(self) -> np.ndarray:
        if self.args.loss == "ns":
            return self.negatives
        return np.zeros(1, dtype=np.int32)

    def get_negative(self, target: int) -> int:
        neg, self.state = _get_negative(self.negatives, target, self.state)
        return int(neg)

    def update(self, ids, target: int, lr: float) -> float:
        """One SGD step of the bag *ids* towards *target*. Returns the loss."""
        if not 0 <= target < self.osz:
            raise IndexError(f"target {target} out of range [0, {self.osz})")
        ids = np.asarray(ids, dtype=np.int64)
        if len(ids) and (ids.min() < 0 or ids.max() >= self.wi.rows):
            raise IndexError(f"input id out of range [0, {self.wi.rows})")
        offsets, nodes, codes = self.tree_arrays()
        loss, self.state, _ = _update(
            self.wi.data, self.wo.data, ids, len(ids), target, float(lr),
            MODEL_IDS[self.args.model], LOSS_IDS[self.args.loss],
            self.args.neg, self._kernel_negatives(), offsets, nodes, codes,
            self._hidden, self._grad, self._output, self.state)
        return float(loss)

    def compute_hidden(self, ids) -> np.ndarray:
        hidden = np.zeros(self.wi.cols, dtype=np.float32)
        for i in ids:
            self.wi.add_to_vector(hidden, int(i))
        if len(ids):
            hidden /= np.float32(len(ids))
        return hidden

    def predict(self, ids, k: int = 1, threshold: float = 0.0
                ) -> list[tuple[int, float]]:
        """Top-k (target, probability), most probable first, lower id on ties."""
        if k < 1 or len(ids) == 0 or self.osz == 0:
            return []
        hidden = self.compute_hidden(ids)
        if self.tree is not None:
            return self._predict_tree(hidden, k, threshold)
        scores = self.wo.multiply(hidden).astype(np.float64)
        scores = np.exp(scores - scores.max())
        scores /= scores.sum()
        out = []
        for i in np.argsort(-scores, kind="stable")[:k]:
            if scores[i] < threshold:
                break
            out.append((int(i), float(scores[i])))
        return out

    def _predict_tree(self, hidden, k, threshold):
        """Best-first search from the root on partial log-probability."""
        tree = self.tree
        bound = _std_log(threshold)
        heap = [(-0.0, tree.root)]
        out = []
        while heap and len(out) < k:
            neg_score, node = heapq.heappop(heap)
            score = -neg_score
            if tree.is_leaf(node):
                out.append((node, math.exp(score)))
                continue
            f = _sigmoid_exact(self.wo.dot_row(hidden, node - self.osz))
            # log(p + 1e-5) can exceed 0; clamped so scores never rise
            for child, s in ((int(tree.left[node]),
                              score + min(_std_log(1.0 - f), 0.0)),
                             (int(tree.right[node]),
                              score + min(_std_log(f), 0.0))):
                if s >= bound:
                    heapq.heappush(heap, (-s, child))
        return out


# ── engine ───────────────────────────────────────────────────────────────────


class FastText:
    """fastText model: dictionary, input / output matrices and their loss.

    ::

        model = FastText.train("train.txt", model="sup", lr=0.5, epoch=25)
        model.predict("the food was great", k=2)
    """

    __slots__ = ("args", "dict", "input", "output", "model", "_word_vectors")

    def __init__(self, *, args: Args, dictionary: Dictionary, input, output):
        self.args = args
        self.dict = dictionary
        self.input = input
        self.output = output
        self._word_vectors = None
        self.model = Model(input, output, args, self._target_counts(),
                           seed=args.seed)

    def _target_counts(self) -> np.ndarray:
        if self.args.model == "sup":
            return self.dict.get_counts(ENTRY_LABEL)
        return self.dict.get_counts(ENTRY_WORD)

    # ── properties ────────────────────────────────────────────────────────

    @property
    def words(self) -> list[str]:
        return self.dict.words[:self.dict.nwords]

    @property
    def labels(self) -> list[str]:
        return self.dict.labels()

    def get_dimension(self) -> int:
        return self.args.dim

    def is_quantized(self) -> bool:
        return isinstance(self.input, QMatrix)

    # ── vectors ───────────────────────────────────────────────────────────

    def get_word_vector(self, word: str) -> np.ndarray:
        """Mean of the input rows of *word* and its char n-grams."""
        vec = np.zeros(self.args.dim, dtype=np.float32)
        ids = self.dict.subwords(word)
        for i in ids:
            self.input.add_to_vector(vec, int(i))
        if len(ids):
            vec /= np.float32(len(ids))
        return vec

    def ngram_vectors(self, word: str) -> list[tuple[str, np.ndarray]]:
        out = []
        for sub, row in self.dict.subword_strings(word):
            vec = np.zeros(self.args.dim, dtype=np.float32)
            self.input.add_to_vector(vec, row)
            out.append((sub, vec))
        return out

    def get_sentence_vector(self, text: str) -> np.ndarray:
        """Supervised: the hidden layer of the line.  Otherwise: the mean of
        the unit-normalised word vectors of its tokens."""
        if "\n" in text:
            raise ValueError("get_sentence_vector processes one line at a time")
        if self.args.model == "sup":
            ids, _ = self.dict.get_line(text + "\n")
            return self.model.compute_hidden(ids)
        svec = np.zeros(self.args.dim, dtype=np.float32)
        count = 0
        for word in text.split():
            vec = self.get_word_vector(word)
            norm = np.linalg.norm(vec)
            if norm > 0:
                svec += vec / norm
                count += 1
        if count:
            svec /= np.float32(count)
        return svec

    # ── prediction ────────────────────────────────────────────────────────

    def predict(self, text: str, k: int = 1, threshold: float = 0.0
                ) -> list[tuple[str, float]]:
        """Predict top-k labels. Returns [(label, probability), ...]."""
        if self.args.model != "sup":
            raise ValueError("Model needs to be supervised for prediction")
        if "\n" in text:
            raise ValueError("predict processes one line at a time")
        ids, _ = self.dict.get_line(text + "\n")
        return [(self.dict.get_label(t), p)
                for t, p in self.model.predict(ids, k, threshold)]

    def test(self, data, k: int = 1, threshold: float = 0.0
             ) -> tuple[int, float, float]:
        """Evaluate on labeled data. Returns (N, precision@k, recall@k)."""
        if self.args.model != "sup":
            raise ValueError("Model needs to be supervised for testing")
        if isinstance(data, (str, os.PathLike)):
            data = iter_lines(data)
        lines = [" ".join(tokens) + "\n" for tokens in data]

        n = n_labels = n_predicted = tp = 0
        for line in lines:
            ids, gold = self.dict.get_line(line)
            if len(gold) == 0 or len(ids) == 0:
                continue
            preds = self.model.predict(ids, k, threshold)
            gold = set(int(g) for g in gold)
            tp += sum(1 for t, _ in preds if t in gold)
            n_predicted += len(preds)
            n_labels += len(gold)
            n += 1
        return n, tp / max(n_predicted, 1), tp / max(n_labels, 1)

    # ── query engine ──────────────────────────────────────────────────────

    def _word_matrix(self) -> np.ndarray:
        """Unit-normalised vectors of every word, computed once."""
        if self._word_vectors is None:
            d = self.dict
            offsets, ids = d.kernel_tables()[5], d.kernel_tables()[6]
            vectors = np.zeros((d.nwords, self.args.dim), dtype=np.float32)
            for w in range(d.nwords):
                rows = ids[offsets[w]:offsets[w + 1]]
                for i in rows:
                    self.input.add_to_vector(vectors[w], int(i))
                vectors[w] /= np.float32(len(rows))
            norms = np.linalg.norm(vectors, axis=1)
            nz = norms > 0
            vectors[nz] /= norms[nz, None]
            self._word_vectors = vectors
        return self._word_vectors

    def _nearest(self, query: np.ndarray, k: int, banned: set[str]
                 ) -> list[tuple[float, str]]:
        norm = np.linalg.norm(query)
        if norm > 0:
            query = query / norm
        sims = self._word_matrix() @ query
        # bounded top-k: banned words can take at most len(banned) slots
        top = heapq.nlargest(k + len(banned), range(len(sims)),
                             key=lambda i: (sims[i], -i))
        out = []
        for i in top:
            word = self.dict.words[i]
            if word in banned:
                continue
            out.append((float(sims[i]), word))
            if len(out) == k:
                break
        return out

    def nn(self, word: str, k: int = 10) -> list[tuple[float, str]]:
        """k nearest words by cosine similarity, *word* itself excluded."""
        return self._nearest(self.get_word_vector(word), k, {word})

    def analogies(self, a: str, b: str, c: str, k: int = 10
                  ) -> list[tuple[float, str]]:
        """k nearest words to b - a + c (terms unit-normalised)."""
        query = np.zeros(self.args.dim, dtype=np.float32)
        for word, sign in ((b, 1.0), (a, -1.0), (c, 1.0)):
            vec = self.get_word_vector(word)
            query += np.float32(sign / (np.linalg.norm(vec) + 1e-8)) * vec
        return self._nearest(query, k, {a, b, c})

    # ── quantization ──────────────────────────────────────────────────────

    def _select_embeddings(self, cutoff: int) -> np.ndarray:
        """The *cutoff* input rows of largest norm, </s> first."""
        order = np.argsort(-self.input.l2_norm_rows(), kind="stable")
        eos = self.dict.eos_id
        if eos >= 0:
            order = np.concatenate([[eos], order[order != eos]])
        return order[:cutoff]

    def quantize(self, dsub: int = 2, qnorm: bool = False,
                 qout: bool = False, cutoff: int = 0, retrain: bool = False,
                 input=None, epoch: int | None = None,
                 lr: float | None = None, thread: int | None = None,
                 verbose: int | None = None):
        """Compress a supervised model in place (product quantization).

        *cutoff* keeps only that many input rows (largest norms) and prunes
        the dictionary accordingly; with *retrain* the pruned model is then
        trained again on *input* before quantizing.
        """
        if self.args.model != "sup":
            raise ValueError("For now we only support quantization of "
                             "supervised models")
        if self.is_quantized():
            raise ValueError("model is already quantized")
        if retrain and input is None:
            raise ValueError("retrain needs the training data (input=...)")
        args = replace(self.args, dsub=dsub, qnorm=qnorm, qout=qout,
                       cutoff=cutoff, retrain=retrain)
        for name, value in (("epoch", epoch), ("lr", lr), ("thread", thread),
                            ("verbose", verbose)):
            if value is not None:
                setattr(args, name, value)
        args.validate()
        rows = min(cutoff, self.input.rows) if cutoff > 0 else self.input.rows
        if rows < KSUB or (qout and self.output.rows < KSUB):
            raise ValueError(f"Matrix too small for quantization, must have "
                             f"at least {KSUB} rows")
        self.args = self.dict.args = args

        if 0 < cutoff < self.input.rows:
            idx = self.dict.prune(self._select_embeddings(cutoff))
            self.input = Matrix(self.input.data[idx])
            if retrain:
                self.model = Model(self.input, self.output, args,
                                   self._target_counts(), seed=args.seed)
                self._fit(input)

        if args.verbose > 0:
            print("Quantizing input matrix", file=sys.stderr)
        self.input = QMatrix.quantize(self.input, dsub, qnorm)
        if qout:
            if args.verbose > 0:
                print("Quantizing output matrix", file=sys.stderr)
            self.output = QMatrix.quantize(self.output, 2, qnorm)
        self.model = Model(self.input, self.output, args,
                           self._target_counts(), seed=args.seed)
        self._word_vectors = None

    # ── I/O ──────────────────────────────────────────────────────────────

    def save(self, path: str):
        """Write the fastText binary model (.bin, or .ftz when quantized)."""
        with open(path, "wb") as f:
            f.write(struct.pack("<ii", FASTTEXT_FILEFORMAT_MAGIC,
                                FASTTEXT_VERSION))
            self.args.save(f)
            self.dict.save(f)
            f.write(struct.pack("<?", self.is_quantized()))
            self.input.save(f)
            f.write(struct.pack("<?", isinstance(self.output, QMatrix)))
            self.output.save(f)

    @classmethod
    def load(cls, path: str) -> FastText:
        with open(path, "rb") as f:
            reader = _Reader(f.read())
        magic, version = reader.unpack("<ii")
        if magic != FASTTEXT_FILEFORMAT_MAGIC:
            raise ValueError(f"{path}: has wrong file format")
        if version != FASTTEXT_VERSION:
            raise ValueError(f"{path}: unsupported model version {version}")
        args = Args.load(reader)
        dictionary = Dictionary.load(reader, args)
        (quant_input,) = reader.unpack("<?")
        input = QMatrix.load(reader) if quant_input else Matrix.load(reader)
        if not quant_input and dictionary.is_pruned():
            raise ValueError("Invalid model file: a pruned dictionary needs "
                             "a quantized input matrix")
        (qout,) = reader.unpack("<?")
        output = QMatrix.load(reader) if qout else Matrix.load(reader)
        args.qout = qout
        if quant_input:
            args.qnorm = input.qnorm
            args.dsub = input.pq.dsub
        if input.cols != args.dim or output.cols != args.dim:
            raise ValueError("corrupt model file: matrix dimension")
        return cls(args=args, dictionary=dictionary, input=input,
                   output=output)

    def save_vectors(self, path: str):
        """Word vectors in text (.vec) format."""
        with open(path, "w", encoding="utf-8", errors="surrogateescape") as f:
            f.write(f"{self.dict.nwords} {self.args.dim}\n")
            for word in self.words:
                f.write(word + " " + _format_vector(self.get_word_vector(word))
                        + "\n")

    def save_output(self, path: str):
        """Output matrix rows in .vec format, named by label or word."""
        names = self.labels if self.args.model == "sup" else self.words
        with open(path, "w", encoding="utf-8", errors="surrogateescape") as f:
            f.write(f"{self.output.rows} {self.args.dim}\n")
            for i, name in enumerate(names):
                vec = np.zeros(self.args.dim, dtype=np.float32)
                self.output.add_to_vector(vec, i)
                f.write(name + " " + _format_vector(vec) + "\n")

    # ── training (mmap pipeline, Hogwild workers) ─────────────────────────

    @classmethod
    def train(cls, data, pretrained_vectors: str | None = None,
              **kwargs) -> FastText:
        """Train a model.

        *data* is a file path (str) or an iterable of token lists.
        Iterables are spilled to a temp file first.  Keyword arguments are
        Args fields; ``model`` picks cbow, sg (default) or sup and sets the
        defaults of the others.
        """
        if not isinstance(data, (str, os.PathLike)):
            tmp = tempfile.NamedTemporaryFile(
                mode="w", suffix=".txt", delete=False, encoding="utf-8")
            try:
                for tokens in data:
                    tmp.write(" ".join(tokens) + "\n")
                tmp.close()
                return cls.train(tmp.name, pretrained_vectors, **kwargs)
            finally:
                try:
                    os.unlink(tmp.name)
                except OSError:
                    pass

        path = os.fspath(data)
        args = Args.for_model(kwargs.pop("model", "sg"), **kwargs)
        d = Dictionary(args)
        d.read_from_file(path, verbose=args.verbose)

        if pretrained_vectors:
            input = _load_pretrained(d, pretrained_vectors, args)
        else:
            input = Matrix.uniform(d.nwords + args.bucket, args.dim,
                                   1.0 / args.dim, args.seed)
        if args.model == "sup":
            if d.nlabels == 0:
                raise ValueError(f"{path}: no labels with prefix "
                                 f"{args.label!r}")
            output = Matrix.zeros(d.nlabels, args.dim)
        else:
            output = Matrix.zeros(d.nwords, args.dim)

        model = cls(args=args, dictionary=d, input=input, output=output)
        model._fit(path)
        return model

    def _fit(self, path: str):
        args, d = self.args, self.dict
        buf = np.asarray(np.memmap(path, dtype=np.uint8, mode="r"))
        buf_len = np.int64(len(buf))
        n_threads = args.thread
        progress = np.zeros(n_threads, dtype=np.int64)
        losses = np.zeros(n_threads, dtype=np.float64)
        examples = np.zeros(n_threads, dtype=np.int64)
        abort = np.zeros(1, dtype=np.int8)
        total = np.int64(args.epoch * d.ntokens)
        offsets, nodes, codes = self.model.tree_arrays()
        job = (buf, buf_len, d.kernel_tables(), d.nwords, d.eos_id,
               d.eos_hash, d.pdiscard, MODEL_IDS[args.model],
               LOSS_IDS[args.loss], args.ws, args.neg, args.word_ngrams,
               args.minn, args.maxn, args.bucket,
               self.input.data, self.output.data,
               self.model._kernel_negatives(), offsets, nodes, codes,
               float(args.lr), total, args.lr_update_rate, args.seed,
               progress, losses, examples, abort)
        t0 = time.time()

        with ThreadPoolExecutor(max_workers=n_threads) as pool:
            futures = [pool.submit(_train_thread, tid, n_threads, *job)
                       for tid in range(n_threads)]
            try:
                while True:
                    done, pending = wait(futures, timeout=0.1,
                                         return_when=FIRST_EXCEPTION)
                    if args.verbose > 1:
                        self._print_progress(progress, losses, examples,
                                             total, t0)
                    for f in done:
                        f.result()
                    if not pending:
                        break
            except BaseException:
                abort[0] = 1
                raise

        self._word_vectors = None
        if args.verbose > 0:
            loss = losses.sum() / max(int(examples.sum()), 1)
            print(f"\rDone — avg.loss {loss:.6f}"
                  f"  ({time.time() - t0:.1f}s)", file=sys.stderr)

    def _print_progress(self, progress, losses, examples, total, t0):
        frac = min(int(progress.sum()) / max(int(total), 1), 1.0)
        elapsed = max(time.time() - t0, 1e-6)
        wst = int(progress.sum()) / elapsed / self.args.thread
        lr = self.args.lr * (1.0 - frac)
        loss = losses.sum() / max(int(examples.sum()), 1)
        eta = elapsed / frac * (1.0 - frac) if frac > 0 else 0.0
        print(f"\rProgress: {100.0 * frac:5.1f}%"
              f"  words/sec/thread: {wst:7.0f}"
              f"  lr: {lr:9.6f}  avg.loss: {loss:9.6f}"
              f"  ETA: {int(eta // 3600):3d}h{int(eta % 3600 // 60):2d}m",
              end="", file=sys.stderr)


def _format_vector(vec: np.ndarray) -> str:
    return " ".join(f"{x:.5f}" for x in vec)


def _load_pretrained(d: Dictionary, path: str, args: Args) -> Matrix:
    """Seed the input matrix from a .vec file; its words join the dictionary."""
    words, rows = [], []
    with open(path, encoding="utf-8", errors="surrogateescape") as f:
        header = f.readline().split()
        if len(header) != 2:
            raise ValueError(f"{path}: expected a 'count dim' header")
        n, dim = int(header[0]), int(header[1])
        if dim != args.dim:
            raise ValueError(f"Dimension of pretrained vectors ({dim}) does "
                             f"not match dimension ({args.dim})")
        for _ in range(n):
            parts = f.readline().rstrip("\n").split(" ")
            if len(parts) < dim + 1:
                raise ValueError(f"{path}: truncated vector file")
            words.append(parts[0])
            rows.append(np.array(parts[1:dim + 1], dtype=np.float32))
    d.add(words)
    d.threshold(1, 0)
    d.init()

    input = Matrix.uniform(d.nwords + args.bucket, args.dim, 1.0 / args.dim,
                           args.seed)
    for word, row in zip(words, rows):
        idx = d.get_id(word)
        if 0 <= idx < d.nwords:
            input.data[idx] = row
    return input


# ── CLI ──────────────────────────────────────────────────────────────────────


_TRAIN_OPTIONS = (
    # (flag, type, Args field)
    ("--lr",              float, "lr"),
    ("--lr-update-rate",  int,   "lr_update_rate"),
    ("--dim",             int,   "dim"),
    ("--ws",              int,   "ws"),
    ("--epoch",           int,   "epoch"),
    ("--min-count",       int,   "min_count"),
    ("--min-count-label", int,   "min_count_label"),
    ("--neg",             int,   "neg"),
    ("--word-ngrams",     int,   "word_ngrams"),
    ("--loss",            str,   "loss"),
    ("--bucket",          int,   "bucket"),
    ("--minn",            int,   "minn"),
    ("--maxn",            int,   "maxn"),
    ("--thread",          int,   "thread"),
    ("--t",               float, "t"),
    ("--label",           str,   "label"),
    ("--verbose",         int,   "verbose"),
    ("--seed",            int,   "seed"),
)


def _read_queries(source):
    if source == "-":
        yield from sys.stdin
    else:
        with open(source, encoding="utf-8", errors="surrogateescape") as f:
            yield from f


def _cli(argv=None):
    p = argparse.ArgumentParser(prog="fastvec")
    sub = p.add_subparsers(dest="cmd")

    for cmd, help_ in (("supervised", "train a supervised classifier"),
                       ("skipgram", "train a skip-gram model"),
                       ("cbow", "train a cbow model")):
        tr = sub.add_parser(cmd, help=help_)
        tr.add_argument("corpus")
        tr.add_argument("-o", "--output", required=True,
                        help="output prefix (.bin and .vec are written)")
        for flag, type_, _ in _TRAIN_OPTIONS:
            tr.add_argument(flag, type=type_, default=None)
        tr.add_argument("--pretrained-vectors", default=None)
        tr.add_argument("--save-output", action="store_true")

    qu = sub.add_parser("quantize", help="quantize a supervised model")
    qu.add_argument("model")
    qu.add_argument("-o", "--output", required=True,
                    help="output prefix (.ftz and .vec are written)")
    qu.add_argument("--input", default=None,
                    help="training data, needed with --retrain")
    qu.add_argument("--dsub",    type=int,   default=2)
    qu.add_argument("--qnorm",   action="store_true")
    qu.add_argument("--qout",    action="store_true")
    qu.add_argument("--cutoff",  type=int,   default=0)
    qu.add_argument("--retrain", action="store_true")
    qu.add_argument("--epoch",   type=int,   default=None)
    qu.add_argument("--lr",      type=float, default=None)
    qu.add_argument("--thread",  type=int,   default=None)
    qu.add_argument("--verbose", type=int,   default=None)

    ts = sub.add_parser("test", help="evaluate precision/recall at k")
    ts.add_argument("model")
    ts.add_argument("test_file")
    ts.add_argument("-k", type=int, default=1)
    ts.add_argument("--threshold", type=float, default=0.0)

    for cmd in ("predict", "predict-prob"):
        pr = sub.add_parser(cmd, help="predict labels of every line")
        pr.add_argument("model")
        pr.add_argument("test_file", nargs="?", default="-")
        pr.add_argument("-k", type=int, default=1)
        pr.add_argument("--threshold", type=float, default=0.0)

    for cmd in ("print-word-vectors", "print-sentence-vectors"):
        pv = sub.add_parser(cmd, help="vectors of the words / lines of stdin")
        pv.add_argument("model")

    pn = sub.add_parser("print-ngrams", help="vectors of the n-grams of a word")
    pn.add_argument("model")
    pn.add_argument("word")

    for cmd in ("nn", "analogies"):
        q = sub.add_parser(cmd, help="nearest neighbours of stdin queries")
        q.add_argument("model")
        q.add_argument("k", type=int, nargs="?", default=10)

    args = p.parse_args(argv)
    if args.cmd is None:
        p.print_help()
        return
    try:
        _run(args)
    except ValueError as e:
        p.error(str(e))


def _run(args):
    if args.cmd in ("supervised", "skipgram", "cbow"):
        overrides = {field: getattr(args, field)
                     for _, _, field in _TRAIN_OPTIONS
                     if getattr(args, field) is not None}
        model_name = {"supervised": "sup", "skipgram": "sg",
                      "cbow": "cbow"}[args.cmd]
        m = FastText.train(args.corpus, args.pretrained_vectors,
                           model=model_name, **overrides)
        m.save(args.output + ".bin")
        m.save_vectors(args.output + ".vec")
        if args.save_output:
            m.save_output(args.output + ".output")
    elif args.cmd == "quantize":
        m = FastText.load(args.model)
        m.quantize(dsub=args.dsub, qnorm=args.qnorm, qout=args.qout,
                   cutoff=args.cutoff, retrain=args.retrain,
                   input=args.input, epoch=args.epoch, lr=args.lr,
                   thread=args.thread, verbose=args.verbose)
        m.save(args.output + ".ftz")
        m.save_vectors(args.output + ".vec")
    elif args.cmd == "test":
        m = FastText.load(args.model)
        n, prec, rec = m.test(args.test_file, k=args.k,
                              threshold=args.threshold)
        print(f"N\t{n}")
        print(f"P@{args.k}\t{prec:.5f}")
        print(f"R@{args.k}\t{rec:.5f}")
    elif args.cmd in ("predict", "predict-prob"):
        m = FastText.load(args.model)
        for line in _read_queries(args.test_file):
            preds = m.predict(line.rstrip("\n"), k=args.k,
                              threshold=args.threshold)
            if args.cmd == "predict":
                print(" ".join(label for label, _ in preds))
            else:
                print(" ".join(f"{label} {prob:.5f}" for label, prob in preds))
    elif args.cmd == "print-word-vectors":
        m = FastText.load(args.model)
        for line in sys.stdin:
            for word in line.split():
                print(word, _format_vector(m.get_word_vector(word)))
    elif args.cmd == "print-sentence-vectors":
        m = FastText.load(args.model)
        for line in sys.stdin:
            print(_format_vector(m.get_sentence_vector(line.rstrip("\n"))))
    elif args.cmd == "print-ngrams":
        m = FastText.load(args.model)
        for sub, vec in m.ngram_vectors(args.word):
            print(sub, _format_vector(vec))
    elif args.cmd == "nn":
        m = FastText.load(args.model)
        for line in sys.stdin:
            for word in line.split():
                for score, other in m.nn(word, k=args.k):
                    print(f"{other} {score:.5f}")
    elif args.cmd == "analogies":
        m = FastText.load(args.model)
        for line in sys.stdin:
            triplet = line.split()
            if len(triplet) != 3:
                print("Query triplet (A - B + C) needs 3 words",
                      file=sys.stderr)
                continue
            a, b, c = triplet
            # "A - B + C": B is the subtracted term
            for score, other in m.analogies(b, a, c, k=args.k):
                print(f"{other} {score:.5f}")


if __name__ == "__main__":
    _cli()
