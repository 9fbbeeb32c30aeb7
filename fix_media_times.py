#!/usr/bin/env python3
"""
Сверка времени съёмки медиафайлов с датами файловой системы.

Что делает скрипт:
  1. Читает время съёмки из метаданных файла:
     — фото: EXIF CreateDate (DateTimeDigitized), затем DateTimeOriginal;
     — видео: поле creation_time из диагностического вывода ffprobe.
  2. Определяет ожидаемый диапазон дат по пути файла (архив вида
     .../YYYY/YYYY-MM/...).
  3. Сравнивает ctime/mtime/btime файла и время съёмки с допуском
     DELTA_MAX_MS и сообщает о расхождениях.
  4. В режиме fix — выставляет mtime/atime равными времени съёмки,
     но ТОЛЬКО если время съёмки попадает в диапазон папки.

Поддерживаемые форматы пути:
  /YYYY/YYYY-MM...          → [YYYY-MM-01, первое число следующего месяца)
  /YYYY/YYYY-Метка-MM...    → то же, с меткой категории перед месяцем
  /YYYY/YYYY-Описание...    → [YYYY-01-01, (YYYY+1)-01-01)
  Границы диапазона — в часовом поясе архива (по умолчанию UTC+9).

Режимы:
  check DIR          — только отчёт, файлы НЕ изменяются
  check-nodir DIR    — отчёт без проверки диапазона папки
  fix DIR            — исправление дат
  fix-nodir DIR      — исправление без проверки диапазона папки
                       (для файлов вне датированного архива)

ВАЖНО (Linux):
  Время изменения inode (ctime) и дату создания (birth time) на Linux
  НЕЛЬЗЯ выставить из user space. Поэтому по умолчанию в роли ctime
  используется mtime (см. FIX_MEDIA_TIMES_USE_INODE_CTIME).

ГАРАНТИИ БЕЗОПАСНОСТИ:
  ✓ Скрипт НИКОГДА не изменяет содержимое файлов (EXIF не переписывается)
  ✓ Скрипт НИКОГДА не удаляет, не переименовывает и не перемещает файлы
  ✓ Единственное изменение — mtime/atime, только в режиме fix

Требования:
  - Python 3.9+
  - Pillow
  - ffprobe (из состава FFmpeg) — для видеофайлов

Настройки (переменные окружения):
  FIX_MEDIA_TIMES_DELTA_MAX_MS       допуск сравнения, мс (10000)
  FIX_MEDIA_TIMES_UTC_OFFSET_HOURS   часовой пояс архива (9)
  FIX_MEDIA_TIMES_MIN_YEAR           нижняя граница года, не включая (1950)
  FIX_MEDIA_TIMES_MAX_YEAR           верхняя граница года, включая (2030)
  FIX_MEDIA_TIMES_SIDECAR_NAME       служебный файл, который пропускается
  FIX_MEDIA_TIMES_FFPROBE            путь к ffprobe
  FIX_MEDIA_TIMES_USE_INODE_CTIME    сравнивать с настоящим ctime (0)
  FIX_MEDIA_TIMES_VERBOSE            подробный вывод (0)

Примеры:
  python3 fix_media_times.py check /photos/2022
  python3 fix_media_times.py fix /photos/2022/2022-05
  python3 fix_media_times.py fix-nodir /photos/unsorted
"""

import os
import re
import sys
import shutil
import asyncio
import argparse
import logging
from dataclasses import dataclass, fields
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path, PurePath
from typing import Awaitable, Callable, Iterator, List, Mapping, Optional

from PIL import Image, UnidentifiedImageError

log = logging.getLogger('fix_media_times')

# ─── Настройки ───────────────────────────────────────────────────────────────

# Допуск при сравнении любых двух временных меток.
DELTA_MAX_MS = 10_000

# Часовой пояс, в котором заведён архив (JST).
UTC_OFFSET_HOURS = 9

# Правдоподобные годы в имени папки: (MIN_YEAR, MAX_YEAR].
MIN_YEAR = 1950
MAX_YEAR = 2030

# Индекс-файл Canon ZoomBrowser, лежит рядом с фотографиями.
SIDECAR_NAME = 'ZbThumbnail.info'

ENV_PREFIX = 'FIX_MEDIA_TIMES_'

IMAGE_EXTENSIONS = {'.jpg', '.jpeg', '.jpe', '.tif', '.tiff'}
VIDEO_EXTENSIONS = {'.mp4', '.mov', '.m4v', '.3gp', '.mts', '.m2ts', '.avi', '.mkv'}

# Теги EXIF (Pillow / стандарт).
EXIF_IFD_POINTER = 0x8769
EXIF_ORIGINAL_DATE = 0x9003   # DateTimeOriginal
EXIF_CREATE_DATE = 0x9004     # DateTimeDigitized («CreateDate» в терминах exiftool)

# Регулярные выражения для пути.
#   /2023/2023-07            → месяц
#   /2023/2023-travel-07     → месяц, с меткой категории
#   /2023/2023-misc          → только год (после дефиса не цифра)
# Оба года захватываются отдельно: несовпадение — ошибка, а не «нет совпадения».
MONTH_DIR_PATTERN = re.compile(r'/(\d{4})/(\d{4})-(?:[^/\d-]+-)?(\d{2})(?!\d)')
YEAR_DIR_PATTERN = re.compile(r'/(\d{4})/(\d{4})-(?=\D)')

# EXIF хранит дату строго как "YYYY:MM:DD hh:mm:ss".
EXIF_DATE_PATTERN = re.compile(r'^(\d{4}):(\d{2}):(\d{2}) (\d{2}):(\d{2}):(\d{2})$')

# Строка ffprobe вида "    creation_time   : 2022-05-15T01:00:00.000000Z".
CREATION_TIME_PATTERN = re.compile(
    r'creation_time\s*:\s*'
    r'(\d{4})-(\d{2})-(\d{2})[T ](\d{2}):(\d{2}):(\d{2})'
    r'(?:\.\d+)?'
    r'(Z|[+-]\d{2}:?\d{2})?'
)

# Нулевые значения, которые пишут камеры и конвертеры вместо реальной даты:
# эпоха Unix и эпоха QuickTime. Сравниваются как показания часов (камера
# пишет "1970:01:01 00:00:00" в своём поясе) и как моменты в UTC.
ZERO_EPOCHS = (
    datetime(1970, 1, 1),
    datetime(1904, 1, 1),
)

DISPLAY_FORMAT = '%Y-%m-%d %H:%M:%S'
UNKNOWN = 'UNKNOWN'

_TRUE_VALUES = {'1', 'true', 'yes', 'on'}
_FALSE_VALUES = {'0', 'false', 'no', 'off', ''}


@dataclass(frozen=True)
class Settings:
    """Константы сверки. Значения по умолчанию совпадают с историческими."""
    delta_max_ms: int = DELTA_MAX_MS
    utc_offset_hours: float = UTC_OFFSET_HOURS
    min_year: int = MIN_YEAR
    max_year: int = MAX_YEAR
    sidecar_name: str = SIDECAR_NAME
    ffprobe: str = 'ffprobe'
    use_inode_ctime: bool = False
    verbose: bool = False

    def __post_init__(self):
        if self.delta_max_ms < 0:
            raise ValueError(f"delta_max_ms must be >= 0, got {self.delta_max_ms}")
        if not -24 < self.utc_offset_hours < 24:
            raise ValueError(f"utc_offset_hours out of range: {self.utc_offset_hours}")
        if not 0 < self.min_year < self.max_year < 9999:
            raise ValueError(
                f"invalid year bounds ({self.min_year}, {self.max_year}]")

    @property
    def tz(self) -> timezone:
        return timezone(timedelta(hours=self.utc_offset_hours))

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'Settings':
        """
        Читает переопределения из переменных окружения FIX_MEDIA_TIMES_*.

        Невалидное значение — ValueError с именем переменной.
        """
        environ = os.environ if environ is None else environ
        values = {}
        for f in fields(cls):
            name = ENV_PREFIX + f.name.upper()
            raw = environ.get(name)
            if raw is None:
                continue
            values[f.name] = _parse_env_value(name, raw, f.type)
        return cls(**values)


def _parse_env_value(name: str, raw: str, kind):
    text = raw.strip()
    if kind is bool:
        lowered = text.lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        raise ValueError(f"{name}: expected a boolean, got {raw!r}")
    if kind in (int, float):
        try:
            return kind(text)
        except ValueError:
            raise ValueError(f"{name}: expected {kind.__name__}, got {raw!r}") from None
    return text


DEFAULT_SETTINGS = Settings()


# ─── Модель данных ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class DateRange:
    """Ожидаемый по пути интервал [begin, end)."""
    begin: datetime
    end: datetime

    def __post_init__(self):
        if not self.begin < self.end:
            raise ValueError(f"empty date range [{self.begin}, {self.end})")

    def contains(self, instant: datetime) -> bool:
        return self.begin <= instant < self.end


@dataclass(frozen=True)
class FileTimestamps:
    """Снимок дат файловой системы, снимается один раз на файл."""
    change_time: datetime
    modify_time: datetime
    creation_time: datetime


@dataclass(frozen=True)
class ExifDates:
    """Сырые строки дат из EXIF (или None, если тега нет)."""
    create_date: Optional[str] = None
    original_date: Optional[str] = None


class MediaKind(Enum):
    IMAGE = 'image'
    VIDEO = 'video'
    UNKNOWN = 'unknown'


class Verdict(Enum):
    CONSISTENT = 'consistent'
    MISSING_METADATA = 'missing-metadata'
    FIXABLE = 'fixable'


@dataclass(frozen=True)
class Classification:
    """
    Итог сверки одного файла: вердикт и признак того, что исправление
    безопасно (время съёмки внутри диапазона папки или проверка отключена).

    Вердикт FIXABLE при fixable=False — расхождение есть, но исправлять
    нельзя: о файле сообщается, сам файл не трогается.
    """
    verdict: Verdict
    fixable: bool

    @property
    def needs_report(self) -> bool:
        return self.verdict is not Verdict.CONSISTENT

    @property
    def is_unfixable(self) -> bool:
        return self.verdict is Verdict.FIXABLE and not self.fixable

    @property
    def should_apply(self) -> bool:
        return self.verdict is Verdict.FIXABLE and self.fixable


@dataclass
class RunStats:
    total: int = 0
    flagged: int = 0
    fixed: int = 0
    unfixable: int = 0
    failed: int = 0
    errors: int = 0


class MetadataReadError(Exception):
    """Не удалось прочитать метаданные файла."""


class NoExifSegmentError(MetadataReadError):
    """В изображении нет сегмента EXIF — нормальная ситуация."""


class CorrectionError(Exception):
    """Не удалось записать даты файловой системы."""


# ─── Диапазон дат по пути ────────────────────────────────────────────────────


def _year_in_bounds(year: int, settings: Settings) -> bool:
    return settings.min_year < year <= settings.max_year


def resolve_date_range(path, settings: Settings = DEFAULT_SETTINGS) -> Optional[DateRange]:
    """
    Определяет ожидаемый диапазон дат по пути файла.

    Сначала пробуется формат /YYYY/YYYY-MM (с необязательной меткой перед
    месяцем), затем /YYYY/YYYY-<не цифра>. Первое совпадение выигрывает.

    Несовпадающие годы или неправдоподобные год/месяц логируются как ошибка
    и дают None. Путь вне датированного архива — просто None.
    """
    # Ведущий слэш: относительный путь "2023/2023-07/x.jpg" тоже совпадает.
    text = '/' + PurePath(path).as_posix()
    tz = settings.tz

    match = MONTH_DIR_PATTERN.search(text)
    if match:
        year, year2, month = (int(g) for g in match.groups())
        if year != year2:
            log.error(f"Error: {path} - directory year mismatch ({year} vs {year2})")
            return None
        if not 1 <= month <= 12 or not _year_in_bounds(year, settings):
            log.error(f"Error: {path} - implausible directory date {year}-{month:02d}")
            return None
        begin = datetime(year, month, 1, tzinfo=tz)
        if month == 12:
            end = datetime(year + 1, 1, 1, tzinfo=tz)
        else:
            end = datetime(year, month + 1, 1, tzinfo=tz)
        return DateRange(begin, end)

    match = YEAR_DIR_PATTERN.search(text)
    if match:
        year, year2 = (int(g) for g in match.groups())
        if year != year2:
            log.error(f"Error: {path} - directory year mismatch ({year} vs {year2})")
            return None
        if not _year_in_bounds(year, settings):
            log.error(f"Error: {path} - implausible directory year {year}")
            return None
        return DateRange(datetime(year, 1, 1, tzinfo=tz),
                         datetime(year + 1, 1, 1, tzinfo=tz))

    return None


# ─── Время съёмки из метаданных ──────────────────────────────────────────────


def media_kind_for(path) -> MediaKind:
    suffix = PurePath(path).suffix.lower()
    if suffix in IMAGE_EXTENSIONS:
        return MediaKind.IMAGE
    if suffix in VIDEO_EXTENSIONS:
        return MediaKind.VIDEO
    return MediaKind.UNKNOWN


def normalize_capture_time(value: Optional[datetime]) -> Optional[datetime]:
    """Нулевые эпохи — заглушки конвертеров, а не время съёмки."""
    if value is None:
        return None
    wall_clock = datetime(*value.timetuple()[:6])
    utc = datetime(*value.astimezone(timezone.utc).timetuple()[:6])
    if wall_clock in ZERO_EPOCHS or utc in ZERO_EPOCHS:
        return None
    return value


def parse_exif_date(value: str, tz: timezone) -> Optional[datetime]:
    """
    Разбирает строку EXIF "YYYY:MM:DD hh:mm:ss" (время — в поясе архива).

    Строка другого вида — ValueError. Несуществующая дата
    (например, "0000:00:00 00:00:00") и нулевая эпоха — None.
    """
    match = EXIF_DATE_PATTERN.match(value.strip().rstrip('\x00'))
    if not match:
        raise ValueError(f"malformed EXIF date {value!r}")
    try:
        parsed = datetime(*(int(g) for g in match.groups()), tzinfo=tz)
    except ValueError:
        return None
    return normalize_capture_time(parsed)


def _parse_utc_offset(text: Optional[str]) -> timezone:
    # ffprobe пишет время в UTC; без суффикса — тоже UTC (так в QuickTime).
    if not text or text == 'Z':
        return timezone.utc
    digits = re.sub(r'\D', '', text[1:])
    delta = timedelta(hours=int(digits[:2]), minutes=int(digits[2:]))
    return timezone(-delta if text[0] == '-' else delta)


def parse_creation_time(text: str) -> Optional[datetime]:
    """Ищет creation_time в выводе ffprobe. Нет поля — None."""
    match = CREATION_TIME_PATTERN.search(text)
    if not match:
        return None
    parts = [int(g) for g in match.groups()[:6]]
    try:
        parsed = datetime(*parts, tzinfo=_parse_utc_offset(match.group(7)))
    except ValueError:
        return None
    return normalize_capture_time(parsed)


def _exif_text(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        value = value.decode('ascii', errors='replace')
    return str(value)


def _read_exif_dates_sync(path) -> ExifDates:
    try:
        with Image.open(path) as img:
            exif = img.getexif()
            if not exif:
                raise NoExifSegmentError(f"No Exif segment found in {path}")
            exif_ifd = exif.get_ifd(EXIF_IFD_POINTER)
    except (UnidentifiedImageError, Image.DecompressionBombError,
            OSError, SyntaxError, ValueError) as e:
        raise MetadataReadError(str(e)) from e

    return ExifDates(
        create_date=_exif_text(exif_ifd.get(EXIF_CREATE_DATE)),
        original_date=_exif_text(exif_ifd.get(EXIF_ORIGINAL_DATE)),
    )


async def read_exif_dates(path) -> ExifDates:
    """Читает даты EXIF через Pillow в рабочем потоке."""
    return await asyncio.to_thread(_read_exif_dates_sync, path)


async def probe_video(path, settings: Settings = DEFAULT_SETTINGS) -> str:
    """Запускает ffprobe и возвращает его диагностический вывод (stderr)."""
    try:
        process = await asyncio.create_subprocess_exec(
            settings.ffprobe, '-hide_banner', str(path),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise MetadataReadError(f"{settings.ffprobe} not found") from e
    except OSError as e:
        raise MetadataReadError(f"{settings.ffprobe}: {e.strerror or e}") from e
    _, stderr = await process.communicate()
    return stderr.decode('utf-8', errors='replace')


ExifReader = Callable[..., Awaitable[ExifDates]]
VideoProber = Callable[..., Awaitable[str]]


class MetadataTimeExtractor:
    """
    Извлекает время съёмки файла.

    Читатель EXIF и ffprobe подставляются снаружи (в тестах — заглушки).
    Любая неудача даёт None: сверка продолжается как «нет метаданных».
    """

    def __init__(self, settings: Settings = DEFAULT_SETTINGS,
                 exif_reader: ExifReader = read_exif_dates,
                 video_prober: VideoProber = probe_video):
        self._settings = settings
        self._exif_reader = exif_reader
        self._video_prober = video_prober

    async def extract(self, path, kind: MediaKind) -> Optional[datetime]:
        if kind is MediaKind.IMAGE:
            return await self._extract_image(path)
        if kind is MediaKind.VIDEO:
            return await self._extract_video(path)
        log.info(f"Info: {path} - unsupported media kind, no metadata")
        return None

    async def _extract_image(self, path) -> Optional[datetime]:
        try:
            dates = await self._exif_reader(path)
        except NoExifSegmentError:
            log.debug(f"  {path} - no EXIF segment")
            return None
        except MetadataReadError as e:
            log.error(f"Error: {path} - {e}")
            return None

        # CreateDate, при отсутствии или порче — DateTimeOriginal
        for label, raw in (('CreateDate', dates.create_date),
                           ('DateTimeOriginal', dates.original_date)):
            if not raw:
                continue
            try:
                parsed = parse_exif_date(raw, self._settings.tz)
            except ValueError as e:
                log.error(f"Error: {path} - {label}: {e}")
                continue
            if parsed is not None:
                return parsed
        return None

    async def _extract_video(self, path) -> Optional[datetime]:
        try:
            output = await self._video_prober(path, self._settings)
        except MetadataReadError as e:
            log.error(f"Error: {path} - {e}")
            return None
        return parse_creation_time(output)


# ─── Сверка ──────────────────────────────────────────────────────────────────


def read_timestamps(path, settings: Settings = DEFAULT_SETTINGS) -> FileTimestamps:
    """
    Снимает даты файловой системы. OSError пробрасывается.

    На Linux нет ни st_birthtime, ни способа выставить ctime, поэтому
    btime берётся из mtime, а ctime — из mtime, если не включён
    use_inode_ctime.
    """
    st = os.stat(path)
    tz = settings.tz
    modify_time = datetime.fromtimestamp(st.st_mtime, tz)
    if settings.use_inode_ctime:
        change_time = datetime.fromtimestamp(st.st_ctime, tz)
    else:
        change_time = modify_time
    birth = getattr(st, 'st_birthtime', None)
    creation_time = datetime.fromtimestamp(birth, tz) if birth is not None else modify_time
    return FileTimestamps(change_time=change_time, modify_time=modify_time,
                          creation_time=creation_time)


def _differs(a: datetime, b: datetime, delta_max_ms: int) -> bool:
    return abs((a - b).total_seconds()) * 1000 > delta_max_ms


def classify(timestamps: FileTimestamps,
             date_range: Optional[DateRange],
             capture_time: Optional[datetime],
             ignore_dir_constraint: bool,
             delta_max_ms: int = DELTA_MAX_MS) -> Classification:
    """
    Сверяет даты файла с временем съёмки и диапазоном папки.

    Вердикт FIXABLE — если хоть одна проверка нашла расхождение:
      - время съёмки вне диапазона папки (или диапазона нет);
      - ctime vs mtime, ctime vs btime, ctime vs время съёмки.
    Признак fixable не зависит от вердикта: исправлять можно, только если
    время съёмки внутри диапазона папки (или проверка папки отключена).
    """
    if capture_time is None:
        return Classification(Verdict.MISSING_METADATA, fixable=ignore_dir_constraint)

    in_range = date_range is not None and date_range.contains(capture_time)
    checks = (
        not ignore_dir_constraint and not in_range,
        _differs(timestamps.change_time, timestamps.modify_time, delta_max_ms),
        _differs(timestamps.change_time, timestamps.creation_time, delta_max_ms),
        _differs(timestamps.change_time, capture_time, delta_max_ms),
    )
    verdict = Verdict.FIXABLE if any(checks) else Verdict.CONSISTENT
    return Classification(verdict, fixable=ignore_dir_constraint or in_range)


# ─── Исправление ─────────────────────────────────────────────────────────────


def set_filesystem_dates(file_path, date: datetime) -> None:
    """
    Устанавливает дату модификации (mtime) и доступа (atime) файла.

    На macOS ядро само сдвигает дату создания назад, если новый mtime
    раньше неё. На Linux дата создания не меняется.

    БЕЗОПАСНОСТЬ: функция НЕ удаляет, НЕ переименовывает и НЕ перемещает файлы.
    """
    timestamp = date.timestamp()
    os.utime(str(file_path), (timestamp, timestamp))


async def apply_correction(path, classification: Classification,
                           capture_time: Optional[datetime]) -> bool:
    """
    Выставляет датам файла время съёмки, если сверка это разрешает.

    Возвращает False без изменений, если исправление небезопасно;
    ошибка записи — CorrectionError.
    """
    if not classification.should_apply or capture_time is None:
        return False
    try:
        await asyncio.to_thread(set_filesystem_dates, path, capture_time)
    except OSError as e:
        raise CorrectionError(f"{path}: {e.strerror or e}") from e
    return True


# ─── Отчёт ───────────────────────────────────────────────────────────────────


def format_time(value: Optional[datetime], tz: timezone) -> str:
    if value is None:
        return UNKNOWN
    return value.astimezone(tz).strftime(DISPLAY_FORMAT)


def report_file(path, timestamps: FileTimestamps, capture_time: Optional[datetime],
                date_range: Optional[DateRange], tz: timezone) -> None:
    log.info(f"{path}:")
    log.info(f"  ctime:   {format_time(timestamps.change_time, tz)}")
    log.info(f"  mtime:   {format_time(timestamps.modify_time, tz)}")
    log.info(f"  btime:   {format_time(timestamps.creation_time, tz)}")
    log.info(f"  capture: {format_time(capture_time, tz)}")
    log.info(f"  begin:   {format_time(date_range.begin if date_range else None, tz)}")
    log.info(f"  end:     {format_time(date_range.end if date_range else None, tz)}")


def report_summary(stats: RunStats, fix: bool) -> None:
    count = stats.fixed if fix else stats.flagged
    if count == 0:
        log.info("no fixable files" if fix else "no target files")
    else:
        action = "fixed" if fix else "flagged"
        log.info(f"{count} of {stats.total} files {action}")
    if stats.unfixable:
        log.info(f"  unfixable (outside directory range): {stats.unfixable}")
    if stats.failed:
        log.info(f"  failed: {stats.failed}")
    if stats.errors:
        log.info(f"  errors: {stats.errors}")


# ─── Поиск файлов ────────────────────────────────────────────────────────────


def find_targets(target: Path) -> Iterator[Path]:
    """
    Файл — сам файл; директория — все записи под ней (файлы и папки).
    Скрытые файлы и папки пропускаются. Порядок — как отдаёт os.walk.
    """
    if not target.is_dir():
        yield target
        return
    for root, dirs, files in os.walk(target):
        dirs[:] = [d for d in dirs if not d.startswith('.')]
        for name in dirs + files:
            if not name.startswith('.'):
                yield Path(root) / name


def list_candidate_files(target: Path, settings: Settings = DEFAULT_SETTINGS) -> List[Path]:
    """Обычные файлы, кроме служебного индекса фотоорганайзера."""
    return [
        path for path in find_targets(target)
        if path.name != settings.sidecar_name and path.is_file()
    ]


# ─── Обработка ───────────────────────────────────────────────────────────────


async def process_file(path: Path, settings: Settings, extractor: MetadataTimeExtractor,
                       fix: bool, ignore_dir: bool, stats: RunStats) -> None:
    try:
        timestamps = read_timestamps(path, settings)
    except OSError as e:
        stats.errors += 1
        log.error(f"Error: {path} - {e.strerror or e}")
        return

    date_range = resolve_date_range(path, settings)
    capture_time = await extractor.extract(path, media_kind_for(path))
    classification = classify(timestamps, date_range, capture_time, ignore_dir,
                              settings.delta_max_ms)

    if not classification.needs_report:
        return
    stats.flagged += 1
    report_file(path, timestamps, capture_time, date_range, settings.tz)

    if not fix:
        return
    if classification.is_unfixable:
        stats.unfixable += 1
        log.info("  skipped: capture time outside directory range")
        return

    try:
        applied = await apply_correction(path, classification, capture_time)
    except CorrectionError as e:
        stats.failed += 1
        log.error(f"  failed: {e}")
        return
    if applied:
        stats.fixed += 1
        log.info(f"  fixed => {format_time(capture_time, settings.tz)}")
    else:
        log.info("  skipped: no capture time")


async def run(target: Path, fix: bool, ignore_dir: bool,
              settings: Settings = DEFAULT_SETTINGS,
              extractor: Optional[MetadataTimeExtractor] = None) -> int:
    """Проверяет (или исправляет) все файлы по очереди. Возвращает код выхода."""
    log.info(f"Mode=[{'Fix' if fix else 'Check'}] Target=[{target}] "
             f"IgnoreDir=[{'yes' if ignore_dir else 'no'}]")

    if extractor is None:
        if shutil.which(settings.ffprobe) is None:
            log.warning(f"Warning: {settings.ffprobe} not found, "
                        f"video files will have no capture time")
        extractor = MetadataTimeExtractor(settings)

    candidates = list_candidate_files(target, settings)
    stats = RunStats(total=len(candidates))
    log.debug(f"Found {stats.total} files")

    for path in candidates:
        await process_file(path, settings, extractor, fix, ignore_dir, stats)

    report_summary(stats, fix)
    return 0 if stats.failed == 0 else 1


# ─── CLI ─────────────────────────────────────────────────────────────────────

# режим → (fix, ignore_dir)
MODES = {
    'check': (False, False),
    'check-nodir': (False, True),
    'fix': (True, False),
    'fix-nodir': (True, True),
}

USAGE_EPILOG = """\
  check DIR: check file/directory
  check-nodir DIR: check file/directory without directory date constraint
  fix DIR: fix file/directory
  fix-nodir DIR: fix file/directory without directory date constraint
"""


class _UsageParser(argparse.ArgumentParser):
    """Любая ошибка разбора — usage в stderr и код 1."""

    def error(self, message):
        self.print_help(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = _UsageParser(
        prog='fix_media_times',
        description='Сверяет время съёмки с датами файлов и исправляет mtime/atime.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=USAGE_EPILOG,
        add_help=False,
    )
    parser.add_argument('mode', choices=list(MODES), help='режим работы')
    parser.add_argument('target', help='файл или директория')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    fix, ignore_dir = MODES[args.mode]

    try:
        settings = Settings.from_env()
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    # ─── Настройка логирования ────────────────────────────────────────────
    log_level = logging.DEBUG if settings.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(message)s',
        stream=sys.stdout
    )
    log.setLevel(log_level)

    # ─── Валидация ────────────────────────────────────────────────────────
    target = Path(os.path.abspath(args.target))
    if not (target.is_file() or target.is_dir()):
        print(f"Unknown target [{args.target}]", file=sys.stderr)
        return 1

    return asyncio.run(run(target, fix, ignore_dir, settings))


if __name__ == '__main__':
    sys.exit(main())
