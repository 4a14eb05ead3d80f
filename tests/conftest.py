"""Pytest configuration and fixtures.

Every test works on a small Spring-style project written under ``tmp_path``
and parsed with the real tree-sitter Java grammar.
"""
import textwrap
from pathlib import Path

import pytest

from api_db_analyzer import AnalyzerConfig, ApiDbAnalyzer
from java_source_model import SourceTree


BASE_PACKAGE = "com.example.shop"


BOOKSTORE_SOURCES = {
    "entities/Book.java": """
        package com.example.shop.entities;

        import jakarta.persistence.Entity;
        import jakarta.persistence.Id;

        @Entity
        public class Book {
            @Id
            private Long id;
            private String title;

            public Long getId() { return id; }
            public String getTitle() { return title; }
        }
    """,
    "entities/Order.java": """
        package com.example.shop.entities;

        import jakarta.persistence.Entity;
        import jakarta.persistence.Table;

        @Entity
        @Table(name = "orders", schema = "shop")
        public class Order {
            private Long id;
        }
    """,
    "entities/Author.java": """
        package com.example.shop.entities;

        import jakarta.persistence.Entity;
        import jakarta.persistence.Table;

        @Entity
        @Table("writers")
        public class Author {
            private Long id;
        }
    """,
    "entities/Money.java": """
        package com.example.shop.entities;

        public class Money {
            private long cents;
        }
    """,
    "repository/BookRepository.java": """
        package com.example.shop.repository;

        import com.example.shop.entities.Book;
        import org.springframework.data.jpa.repository.JpaRepository;
        import org.springframework.data.jpa.repository.Query;
        import java.util.List;

        public interface BookRepository extends JpaRepository<Book, Long> {
            @Query("SELECT b FROM Book b WHERE b.active = true")
            List<Book> findActive();

            List<Book> findByTitle(String title);
        }
    """,
    "repository/OrderRepository.java": """
        package com.example.shop.repository;

        import com.example.shop.entities.Order;
        import org.springframework.data.jpa.repository.JpaRepository;
        import org.springframework.data.jpa.repository.NativeQuery;
        import java.util.List;

        public interface OrderRepository extends JpaRepository<Order, Long> {
            @NativeQuery(value = "SELECT * FROM orders " + "WHERE created > now()")
            List<Order> findRecent();
        }
    """,
    "repository/AuditRepository.java": """
        package com.example.shop.repository;

        import com.example.shop.entities.Money;
        import org.springframework.data.jpa.repository.JpaRepository;

        public interface AuditRepository extends JpaRepository<Money, Long> {
        }
    """,
    "services/BookService.java": """
        package com.example.shop.services;

        import com.example.shop.entities.Book;
        import java.util.List;

        public interface BookService {
            List<Book> getAll();
            Book create(Book book);
            void remove(Long id);
            List<Book> active();
            Book rename(Long id, String title);
            List<Book> byTitle(String title);
        }
    """,
    "serviceimpl/BookServiceImpl.java": """
        package com.example.shop.serviceimpl;

        import com.example.shop.entities.Book;
        import com.example.shop.repository.BookRepository;
        import com.example.shop.services.BookService;
        import java.util.List;

        public class BookServiceImpl implements BookService {
            private final BookRepository bookRepository;

            public BookServiceImpl(BookRepository bookRepository) {
                this.bookRepository = bookRepository;
            }

            @Override
            public List<Book> getAll() {
                return bookRepository.findAll();
            }

            @Override
            public Book create(Book book) {
                return bookRepository.save(book);
            }

            @Override
            public void remove(Long id) {
                bookRepository.deleteById(id);
            }

            @Override
            public List<Book> active() {
                return bookRepository.findActive();
            }

            @Override
            public Book rename(Long id, String title) {
                Book book = bookRepository.findById(id).orElseThrow();
                return this.bookRepository.save(book);
            }

            @Override
            public List<Book> byTitle(String title) {
                return bookRepository.findByTitle(title);
            }
        }
    """,
    "services/OrderService.java": """
        package com.example.shop.services;

        import com.example.shop.entities.Order;
        import java.util.List;

        public interface OrderService {
            List<Order> recent();
            void place(Order order);
        }
    """,
    "serviceimpl/OrderServiceImpl.java": """
        package com.example.shop.serviceimpl;

        import com.example.shop.entities.Order;
        import com.example.shop.repository.AuditRepository;
        import com.example.shop.repository.OrderRepository;
        import com.example.shop.services.OrderService;
        import java.util.List;

        public class OrderServiceImpl implements OrderService {
            private OrderRepository orderRepository;
            private AuditRepository auditRepository;
            private LegacyGateway legacy;

            @Override
            public List<Order> recent() {
                return orderRepository.findRecent();
            }

            @Override
            public void place(Order order) {
                legacy.process(order);
                legacy.saveOrder(order);
            }
        }
    """,
    "controllers/BookController.java": """
        package com.example.shop.controllers;

        import com.example.shop.entities.Book;
        import com.example.shop.services.BookService;
        import org.springframework.web.bind.annotation.*;
        import java.util.List;

        @RestController
        @RequestMapping("/books")
        public class BookController {
            private final BookService bookService;

            public BookController(BookService bookService) {
                this.bookService = bookService;
            }

            @GetMapping
            public List<Book> list() {
                return bookService.getAll();
            }

            @PostMapping
            public Book create(@RequestBody Book book) {
                return bookService.create(book);
            }

            @DeleteMapping("/{id}")
            public void delete(@PathVariable Long id) {
                bookService.remove(id);
            }

            @GetMapping("/active")
            public List<Book> active() {
                return bookService.active();
            }

            @PutMapping("/{id}/title")
            public Book rename(@PathVariable Long id, @RequestParam String title) {
                return bookService.rename(id, title);
            }

            @GetMapping("/ping")
            public String ping() {
                return "pong";
            }

            public List<Book> notAnEndpoint() {
                return bookService.getAll();
            }
        }
    """,
    "controllers/OrderController.java": """
        package com.example.shop.controllers;

        import com.example.shop.entities.Order;
        import com.example.shop.services.OrderService;
        import org.springframework.web.bind.annotation.GetMapping;
        import org.springframework.web.bind.annotation.PostMapping;
        import org.springframework.web.bind.annotation.RequestBody;
        import org.springframework.web.bind.annotation.RestController;
        import java.util.List;

        @RestController
        public class OrderController {
            private OrderService orderService;

            @GetMapping("/orders/recent")
            public List<Order> recent() {
                return orderService.recent();
            }

            @PostMapping("/orders")
            public void place(@RequestBody Order order) {
                orderService.place(order);
            }
        }
    """,
}


def write_java_tree(source_root: Path, sources, base_package: str = BASE_PACKAGE) -> Path:
    """Write ``{relative path: source}`` below ``source_root/<base package>``."""
    base = source_root / base_package.replace(".", "/")
    for rel, code in sources.items():
        path = base / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(code).lstrip(), encoding="utf-8")
    return source_root


@pytest.fixture
def java_tree(tmp_path):
    """Factory: write extra/overriding sources on top of the bookstore project."""
    source_root = tmp_path / "src" / "main" / "java"

    def _build(extra=None, include_bookstore=True):
        sources = dict(BOOKSTORE_SOURCES) if include_bookstore else {}
        sources.update(extra or {})
        write_java_tree(source_root, sources)
        return source_root

    return _build


@pytest.fixture
def bookstore(java_tree):
    """Source root of the default bookstore project."""
    return java_tree()


@pytest.fixture
def config(bookstore):
    return AnalyzerConfig(source_root=str(bookstore), base_package=BASE_PACKAGE)


@pytest.fixture
def analyzer(config):
    return ApiDbAnalyzer(config)


@pytest.fixture
def source_tree(bookstore):
    return SourceTree(bookstore)


def unit_for(tree: SourceTree, layer: str, name: str):
    """Parsed unit of ``<base>/<layer>/<name>.java``."""
    return tree.load(f"{BASE_PACKAGE}.{layer}.{name}")


def call_in(unit, method_name: str, call_name: str):
    """First call named ``call_name`` inside method ``method_name`` of ``unit``."""
    for method in unit.methods_named(method_name):
        for call in unit.iter_calls(method):
            if unit.call_name(call) == call_name:
                return call
    raise AssertionError(f"no call {call_name} in {method_name}")
