# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from inspect import Parameter, Signature
from math import inf, isfinite
from os import PathLike, fspath
from typing import ClassVar, Protocol, Self, cast, dataclass_transform, overload, runtime_checkable

from lxml import etree

from .schema import RelaxNGValidator

__all__ = (  # noqa: RUF022
    'ConfigurationError',
    'Namespace',
    'XMLElement',
    'AnnotatedXMLElement',

    'DataAdapter',
    'IntegerAdapter',
    'FloatAdapter',
    'PortAdapter',
    'PositiveIntegerAdapter',
    'NonNegativeFloatAdapter',
    'PositiveFloatAdapter',

    'Attribute',
    'OptionalAttribute',
    'OptionalDataElement',
    'MultiElement',
)


# noinspection PyProtectedMember
type ETreeElement = etree._Element  # noqa: SLF001
type NSMap = dict[str | None, str]
type XMLData = str | int | float | bool


class ConfigurationError(ValueError):
    """Raised when a configuration document or value is not valid"""


class Namespace(str):
    __slots__ = 'prefix', 'schema'

    prefix: str | None
    schema: str | None

    def __new__(cls, namespace: str, /, *, prefix: str | None = None, schema: str | None = None) -> Self:
        self = super().__new__(cls, namespace)
        self.prefix = prefix
        self.schema = schema
        return self

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}({super().__repr__()}, prefix={self.prefix!r}, schema={self.schema!r})'

    def __setattr__(self, name: str, value: object, /) -> None:
        if name in self.__slots__ and hasattr(self, name):
            raise AttributeError(f'{self.__class__.__name__} object attribute {name!r} is read-only')
        return super().__setattr__(name, value)


class XMLElement:
    # Public attributes. These can either be overwritten by subclasses, or preferably specified via class parameters:
    #
    # class MyElement(XMLElement, name=..., namespace=...):
    #     ...
    #
    # Note that class parameters use normal names, while class attributes use sunder names to avoid conflicts with
    # application defined XMLElement attributes and elements.

    _name_: ClassVar[str | None] = None
    _namespace_: ClassVar[Namespace | None] = None

    # Derived and internal attributes (these should not be overwritten in subclasses)

    _etree_element_: ETreeElement

    _tag_: ClassVar[str | None] = None
    _qualname_: ClassVar[str | None] = None
    _nsmap_: ClassVar[NSMap | None] = None

    _fields_: ClassVar[dict[str, 'FieldDescriptor']] = {}

    __signature__: ClassVar[Signature] = Signature()

    _all_arguments: ClassVar[frozenset[str]] = frozenset()
    _mandatory_arguments: ClassVar[frozenset[str]] = frozenset()

    def __new__(cls, **kw: object) -> Self:
        if cls._tag_ is None:
            raise TypeError(f'Cannot instantiate abstract class {cls.__qualname__!r} that does not specify a name')
        if not cls._all_arguments.issuperset(kw):
            raise TypeError(f'got an unexpected keyword argument {next(iter(set(kw) - cls._all_arguments))!r}')
        if not cls._mandatory_arguments.issubset(kw):
            raise TypeError(f'missing a required keyword argument {next(iter(cls._mandatory_arguments - set(kw)))!r}')
        return super().__new__(cls)

    def __init__(self, **kw: object) -> None:
        self._etree_element_ = etree.Element(self._tag_, nsmap=self._nsmap_)  # type: ignore[arg-type]  # lxml stubs are a mess
        for name, value in kw.items():
            setattr(self, name, value)

    def __init_subclass__(cls, name: str | None = None, namespace: Namespace | None = None, **kw: object) -> None:
        super().__init_subclass__(**kw)

        if name is not None:
            cls._name_ = name
        if namespace is not None:
            cls._namespace_ = namespace

        if cls._name_ is not None:
            if cls._namespace_ is not None:
                cls._tag_ = f'{{{cls._namespace_}}}{cls._name_}'
                cls._qualname_ = f'{cls._namespace_.prefix}:{cls._name_}' if cls._namespace_.prefix is not None else cls._name_
                cls._nsmap_ = {cls._namespace_.prefix: cls._namespace_}
            else:
                cls._tag_ = cls._name_
                cls._qualname_ = cls._name_

        # all the fields on this element (both inherited and locally defined)
        fields = cls._fields_ | {name: value for name, value in cls.__dict__.items() if isinstance(value, FieldDescriptor)}

        cls._fields_ = fields
        cls.__signature__ = Signature(parameters=[descriptor.signature_parameter for descriptor in fields.values()])
        cls._all_arguments = frozenset(cls.__signature__.parameters)
        cls._mandatory_arguments = frozenset(p.name for p in cls.__signature__.parameters.values() if p.default is Parameter.empty)

    def __repr__(self) -> str:
        arguments = ', '.join(f'{name}={getattr(self, name)!r}' for name in self._fields_)
        return f'{self.__class__.__qualname__}({arguments})'

    def __eq__(self, other: object) -> bool:
        if isinstance(other, XMLElement):
            return type(self) is type(other) and all(getattr(self, name) == getattr(other, name) for name in self._fields_)
        return NotImplemented

    __hash__ = None  # type: ignore[assignment]

    @classmethod
    def from_xml(cls, element: ETreeElement) -> Self:
        if cls._tag_ is None:
            raise TypeError(f'Cannot instantiate abstract class {cls.__qualname__} that does not specify a name')
        if element.tag != cls._tag_:
            raise ConfigurationError(f'The element tag does not match the {cls.__qualname__} element tag: {element.tag!r} != {cls._tag_!r}')
        instance = super().__new__(cls)
        instance._etree_element_ = element
        for field in instance._fields_.values():
            field.from_xml(instance)
        return instance

    @classmethod
    def from_string(cls, data: str | bytes, *, validate: bool = True) -> Self:
        try:
            element = etree.fromstring(data.encode() if isinstance(data, str) else data)
        except etree.XMLSyntaxError as exc:
            raise ConfigurationError(f'Invalid XML document: {exc!s}') from exc
        if validate:
            cls.validate(element)
        return cls.from_xml(element)

    @classmethod
    def from_file(cls, path: str | PathLike[str], *, validate: bool = True) -> Self:
        try:
            element = etree.parse(fspath(path)).getroot()  # noqa: S320
        except etree.XMLSyntaxError as exc:
            raise ConfigurationError(f'Invalid XML document {path!s}: {exc!s}') from exc
        if validate:
            cls.validate(element)
        return cls.from_xml(element)

    @classmethod
    def validate(cls, element: ETreeElement) -> None:
        """Check the element against the schema of its namespace, if it has one"""
        if cls._namespace_ is None or cls._namespace_.schema is None:
            return
        validator = RelaxNGValidator.for_schema(cls._namespace_.schema)
        if not validator.validate(element):
            raise ConfigurationError(f'Invalid {cls._qualname_!r} document: {validator.error_message()}')

    def to_xml(self) -> ETreeElement:
        return self._etree_element_

    def to_string(self, *, pretty_print: bool = True) -> str:
        return etree.tostring(self._etree_element_, encoding='unicode', pretty_print=pretty_print)


@runtime_checkable
class DataAdapter[T](Protocol):
    """A protocol that describes an external adapter between a data type T and XML"""

    @staticmethod
    def xml_parse(value: str, /) -> T:
        """Parse XML into the data type"""
        ...

    @staticmethod
    def xml_build(value: T, /) -> str:
        """Build XML from the data type"""
        ...


type DataAdapterType[T] = type[DataAdapter[T]]


class IntegerAdapter:
    def __init_subclass__(cls, *, min_value: int | None = None, max_value: int | None = None, name: str = 'integer', **kw) -> None:  # noqa: ANN003
        super().__init_subclass__(**kw)

        lower_bound = min_value if min_value is not None else -inf
        upper_bound = max_value if max_value is not None else +inf

        def xml_parse(value: str) -> int:
            number = int(value)
            if lower_bound <= number <= upper_bound:
                return number
            raise ValueError(f"invalid value '{value.strip()}' for {name}")

        def xml_build(value: int) -> str:
            if lower_bound <= value <= upper_bound:
                return str(value)
            raise ValueError(f"invalid value '{value}' for {name}")

        cls.xml_parse = staticmethod(xml_parse)  # type: ignore[method-assign]
        cls.xml_build = staticmethod(xml_build)  # type: ignore[method-assign]

    @staticmethod
    def xml_parse(value: str) -> int:
        return int(value)

    @staticmethod
    def xml_build(value: int) -> str:
        return str(value)


class PositiveIntegerAdapter(IntegerAdapter, min_value=1, name='positive integer'):
    pass


class PortAdapter(IntegerAdapter, min_value=0, max_value=65535, name='port number'):
    pass


class FloatAdapter:
    def __init_subclass__(cls, *, min_value: float | None = None, exclusive: bool = False, name: str = 'number', **kw) -> None:  # noqa: ANN003
        super().__init_subclass__(**kw)

        lower_bound = min_value if min_value is not None else -inf

        def check(number: float) -> bool:
            return isfinite(number) and (number > lower_bound if exclusive else number >= lower_bound)

        def xml_parse(value: str) -> float:
            number = float(value)
            if check(number):
                return number
            raise ValueError(f"invalid value '{value.strip()}' for {name}")

        def xml_build(value: float) -> str:
            if check(value):
                return repr(float(value))
            raise ValueError(f"invalid value '{value}' for {name}")

        cls.xml_parse = staticmethod(xml_parse)  # type: ignore[method-assign]
        cls.xml_build = staticmethod(xml_build)  # type: ignore[method-assign]

    @staticmethod
    def xml_parse(value: str) -> float:
        return float(value)

    @staticmethod
    def xml_build(value: float) -> str:
        return repr(float(value))


class NonNegativeFloatAdapter(FloatAdapter, min_value=0, name='non-negative number'):
    pass


class PositiveFloatAdapter(FloatAdapter, min_value=0, exclusive=True, name='positive number'):
    pass


class FieldDescriptor[F](ABC):
    name: str | None
    type: type[F]

    @property
    def signature_parameter(self) -> Parameter:
        assert self.name is not None  # noqa: S101 (used by type checkers)
        return Parameter(name=self.name, kind=Parameter.KEYWORD_ONLY, annotation=self.type)

    def __set_name__(self, owner: type[XMLElement], name: str) -> None:
        if not issubclass(owner, XMLElement):  # static type analysis does not catch this
            raise TypeError(f'Can only use {self.__class__.__qualname__} descriptors on XMLElement objects')
        if self.name is None:
            self.name = name
        elif name != self.name:
            raise TypeError(f'cannot assign the same {self.__class__.__name__} descriptor to two different names: {self.name} and {name}')

    @abstractmethod
    def from_xml(self, instance: XMLElement) -> None:
        """Fill in the instance's field value from its corresponding etree element"""
        raise NotImplementedError


class DataField[D: XMLData](FieldDescriptor[D], ABC):
    """Base for the descriptors that hold a value of a simple data type"""

    xml_build: Callable[[D], str]
    xml_parse: Callable[[str], D]

    adapter: DataAdapterType[D] | None

    def _setup_adapter(self, data_type: type[D], adapter: DataAdapterType[D] | None) -> None:
        self.type = data_type
        self.adapter = adapter
        if adapter is not None:
            self.xml_parse = adapter.xml_parse
            self.xml_build = adapter.xml_build
        else:
            self.xml_parse = data_type
            self.xml_build = str

    def _check_value(self, value: object) -> D:
        if self.type is float and isinstance(value, int) and not isinstance(value, bool):
            value = float(value)
        if not isinstance(value, self.type):
            raise TypeError(f'the {self.name!r} value must be of type {self.type.__qualname__}')
        return cast(D, value)


class Attribute[D: XMLData](DataField[D]):
    def __init__(self, data_type: type[D], /, *, name: str | None = None, adapter: DataAdapterType[D] | None = None) -> None:
        self.name = None
        self.xml_name = name or ''
        self._setup_adapter(data_type, adapter)

    def __repr__(self) -> str:
        adapter_name = self.adapter.__qualname__ if self.adapter else None
        return f'{self.__class__.__name__}({self.type.__qualname__}, name={self.xml_name!r}, adapter={adapter_name})'

    def __set_name__(self, owner: type[XMLElement], name: str) -> None:
        super().__set_name__(owner, name)
        self.xml_name = self.xml_name or name

    @overload
    def __get__(self, instance: None, owner: type[XMLElement]) -> Self: ...

    @overload
    def __get__(self, instance: XMLElement, owner: type[XMLElement] | None = None) -> D: ...

    def __get__(self, instance: XMLElement | None, owner: type[XMLElement] | None = None) -> Self | D:
        if instance is None:
            return self
        try:
            return self.xml_parse(cast(str, instance._etree_element_.attrib[self.xml_name]))
        except KeyError as exc:
            raise AttributeError(f'mandatory attribute {self.name!r} is missing') from exc

    def __set__(self, instance: XMLElement, value: D) -> None:
        instance._etree_element_.set(self.xml_name, self.xml_build(self._check_value(value)))

    def __delete__(self, instance: XMLElement):  # noqa: ANN204
        raise AttributeError(f'mandatory attribute {self.name!r} cannot be deleted')

    def from_xml(self, instance: XMLElement) -> None:
        """Fill in the instance's field value from its corresponding etree element"""
        try:
            self.__get__(instance)
        except AttributeError as exc:
            raise ConfigurationError(f'Missing mandatory attribute {self.xml_name!r} from {instance._qualname_!r}') from exc
        except ValueError as exc:
            raise ConfigurationError(f'Invalid value for attribute {self.xml_name!r} from {instance._qualname_!r}: {exc!s}') from exc


class OptionalAttribute[D: XMLData](DataField[D]):
    def __init__(self, data_type: type[D], /, *, name: str | None = None, default: D | None = None, adapter: DataAdapterType[D] | None = None) -> None:
        self.name = None
        self.xml_name = name or ''
        self.default = default
        self._setup_adapter(data_type, adapter)

    def __repr__(self) -> str:
        adapter_name = self.adapter.__qualname__ if self.adapter else None
        return f'{self.__class__.__name__}({self.type.__qualname__}, name={self.xml_name!r}, default={self.default!r}, adapter={adapter_name})'

    @property
    def signature_parameter(self) -> Parameter:
        assert self.name is not None  # noqa: S101 (used by type checkers)
        return Parameter(name=self.name, kind=Parameter.KEYWORD_ONLY, annotation=self.type | None, default=self.default)

    def __set_name__(self, owner: type[XMLElement], name: str) -> None:
        super().__set_name__(owner, name)
        self.xml_name = self.xml_name or name

    @overload
    def __get__(self, instance: None, owner: type[XMLElement]) -> Self: ...

    @overload
    def __get__(self, instance: XMLElement, owner: type[XMLElement] | None = None) -> D | None: ...

    def __get__(self, instance: XMLElement | None, owner: type[XMLElement] | None = None) -> Self | D | None:
        if instance is None:
            return self
        attribute = instance._etree_element_.get(self.xml_name)
        return self.default if attribute is None else self.xml_parse(attribute)

    def __set__(self, instance: XMLElement, value: D | None) -> None:
        if value is None:
            instance._etree_element_.attrib.pop(self.xml_name, '')
        else:
            instance._etree_element_.set(self.xml_name, self.xml_build(self._check_value(value)))

    def __delete__(self, instance: XMLElement) -> None:
        instance._etree_element_.attrib.pop(self.xml_name, '')

    def from_xml(self, instance: XMLElement) -> None:
        """Fill in the instance's field value from its corresponding etree element"""
        try:
            self.__get__(instance)
        except ValueError as exc:
            raise ConfigurationError(f'Invalid value for attribute {self.xml_name!r} from {instance._qualname_!r}: {exc!s}') from exc


@dataclass
class DataElementValue[D: XMLData]:
    value: D
    element: ETreeElement


class OptionalDataElement[D: XMLData](DataField[D]):
    """A child element that holds a single value as its text, which may be missing"""

    def __init__(self, data_type: type[D], /, *, name: str | None = None, default: D | None = None, adapter: DataAdapterType[D] | None = None) -> None:
        self.name = None
        self.xml_name = name or ''
        self.xml_tag = ''
        self.default = default
        self._setup_adapter(data_type, adapter)

    def __repr__(self) -> str:
        adapter_name = self.adapter.__qualname__ if self.adapter else None
        return f'{self.__class__.__name__}({self.type.__name__}, name={self.xml_name!r}, default={self.default!r}, adapter={adapter_name})'

    @property
    def signature_parameter(self) -> Parameter:
        assert self.name is not None  # noqa: S101 (used by type checkers)
        return Parameter(name=self.name, kind=Parameter.KEYWORD_ONLY, annotation=self.type | None, default=self.default)

    def __set_name__(self, owner: type[XMLElement], name: str) -> None:
        super().__set_name__(owner, name)
        self.xml_name = self.xml_name or name
        self.xml_tag = f'{{{owner._namespace_}}}{self.xml_name}' if owner._namespace_ is not None else self.xml_name

    @overload
    def __get__(self, instance: None, owner: type[XMLElement]) -> Self: ...

    @overload
    def __get__(self, instance: XMLElement, owner: type[XMLElement] | None = None) -> D | None: ...

    def __get__(self, instance: XMLElement | None, owner: type[XMLElement] | None = None) -> Self | D | None:
        if instance is None:
            return self
        data_element: DataElementValue[D] | None = instance.__dict__.get(self.name)
        return self.default if data_element is None else data_element.value

    def __set__(self, instance: XMLElement, value: D | None) -> None:
        if value is None:
            self.__delete__(instance)
            return
        value = self._check_value(value)
        xml_value = self.xml_build(value)
        data_element: DataElementValue[D] | None = instance.__dict__.get(self.name)
        if data_element is None:
            data_element = DataElementValue(value, etree.SubElement(instance._etree_element_, self.xml_tag))
            instance.__dict__[self.name] = data_element
        data_element.value = value
        data_element.element.text = xml_value

    def __delete__(self, instance: XMLElement) -> None:
        data_element = instance.__dict__.pop(self.name, None)
        if data_element is not None:
            instance._etree_element_.remove(data_element.element)

    def from_xml(self, instance: XMLElement) -> None:
        """Fill in the instance's field value from its corresponding etree element"""
        elements = [element for element in instance._etree_element_ if element.tag == self.xml_tag]
        if len(elements) > 1:
            raise ConfigurationError(f'Excess elements for {self.xml_name!r}')
        if elements:
            element = elements[0]
            try:
                instance.__dict__[self.name] = DataElementValue(self.xml_parse(element.text or ''), element)
            except ValueError as exc:
                raise ConfigurationError(f'Invalid value for element {self.xml_name!r}: {exc!s}') from exc


class MultiElement[E: XMLElement](FieldDescriptor[E]):
    """Zero or more child elements of the same type"""

    def __init__(self, element_type: type[E], /) -> None:
        if not (isinstance(element_type, type) and issubclass(element_type, XMLElement)):
            raise TypeError(f"element type must be a subclass of XMLElement, not '{type(element_type)}'")
        if element_type._tag_ is None:
            raise TypeError(f'{element_type.__qualname__!r} must specify a name to be usable as element type')
        self.name = None
        self.type = element_type

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}({self.type.__name__})'

    @property
    def signature_parameter(self) -> Parameter:
        assert self.name is not None  # noqa: S101 (used by type checkers)
        return Parameter(name=self.name, kind=Parameter.KEYWORD_ONLY, annotation=Iterable[self.type], default=())  # type: ignore[name-defined]

    @overload
    def __get__(self, instance: None, owner: type[XMLElement]) -> Self: ...

    @overload
    def __get__(self, instance: XMLElement, owner: type[XMLElement] | None = None) -> list[E]: ...

    def __get__(self, instance: XMLElement | None, owner: type[XMLElement] | None = None) -> Self | list[E]:
        if instance is None:
            return self
        return list(instance.__dict__.get(self.name, ()))

    def __set__(self, instance: XMLElement, value: Iterable[E]) -> None:
        elements = list(value)
        parent_element = instance._etree_element_
        for element in elements:
            if type(element) is not self.type:
                raise TypeError(f'element must be of type {self.type.__qualname__}')
            if element._etree_element_.getparent() not in {parent_element, None}:
                raise ValueError(f'element {element!r} already belongs to another container')
        for element in instance.__dict__.get(self.name, ()):
            parent_element.remove(element._etree_element_)
        parent_element.extend(element._etree_element_ for element in elements)
        instance.__dict__[self.name] = elements

    def __delete__(self, instance: XMLElement) -> None:
        for element in instance.__dict__.pop(self.name, ()):
            instance._etree_element_.remove(element._etree_element_)

    def from_xml(self, instance: XMLElement) -> None:
        """Fill in the instance's field value from its corresponding etree elements"""
        elements = [element for element in instance._etree_element_ if element.tag == self.type._tag_]
        instance.__dict__[self.name] = [self.type.from_xml(element) for element in elements]


field_specifiers = (Attribute, OptionalAttribute, OptionalDataElement, MultiElement)


@dataclass_transform(kw_only_default=True, field_specifiers=field_specifiers)  # type: ignore[misc]
class AnnotatedXMLElement(XMLElement):
    """
    A static type checker friendly variant of XMLElement.

    The element definition needs to include both an annotation and the descriptor
    definition for the element (same for attributes):

      port: OptionalAttribute[int] = OptionalAttribute(int, default=8888, adapter=PortAdapter)
      bootstrap_peers: MultiElement[BootstrapPeer] = MultiElement(BootstrapPeer)

    With these, static type checkers are able to infer the __init__ signature and
    identify problems with the arguments used to create instances.
    """


del field_specifiers
